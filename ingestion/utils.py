"""Shared utilities for the interchange pipeline."""

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class ProgressReporter:
    """Forward progress percentages to an optional callback.

    Values are clamped to 0-100 and never go backwards, so callers can drive a
    progress bar directly. Reporting is advisory: a failing callback is logged
    and otherwise ignored.
    """

    def __init__(self, callback: ProgressCallback | None = None, start: float = 0.0, end: float = 100.0) -> None:
        self.callback = callback
        self.start = start
        self.end = end
        self.current = start

    def __call__(self, percent: float) -> None:
        value = self.start + (self.end - self.start) * max(0.0, min(100.0, percent)) / 100
        if value < self.current:
            return
        self.current = value
        if self.callback is None:
            return
        try:
            self.callback(value)
        except Exception:
            logger.exception("Progress callback failed at %.0f%%", value)

    def scaled(self, start: float, end: float) -> "ProgressReporter":
        """Return a reporter mapping 0-100 onto [start, end] of this one."""
        span = self.end - self.start
        return ProgressReporter(
            self.callback,
            start=self.start + span * start / 100,
            end=self.start + span * end / 100,
        )


def decode_text(content: bytes) -> str:
    """Decode file bytes as UTF-8 (BOM tolerated), falling back to cp1252."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("File is not valid UTF-8, decoding as cp1252")
        return content.decode("cp1252", errors="replace")


def split_tags(raw: str, separator: str | None = None) -> list[str]:
    """Split a tag cell into unique, non-empty tags.

    ``separator=None`` splits on whitespace.
    """
    parts = raw.split(separator) if separator else raw.split()
    return list(dict.fromkeys(p.strip() for p in parts if p.strip()))
