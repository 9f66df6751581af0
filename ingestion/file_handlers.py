"""Format detection for deck import files."""

import logging
from enum import Enum
from pathlib import PurePath

from backend.errors import UnsupportedFormat
from ingestion.constants import ZIP_SIGNATURE

logger = logging.getLogger(__name__)


class ImportFormat(str, Enum):
    """Closed set of importable formats."""

    CONTAINER = "container"
    DELIMITED_TEXT = "delimited_text"
    PLAIN_TEXT = "plain_text"
    CANONICAL_JSON = "canonical_json"


# Map file extensions to their formats; ".txt" is resolved by content
EXTENSIONS: dict[str, ImportFormat] = {
    ".apkg": ImportFormat.CONTAINER,
    ".colpkg": ImportFormat.CONTAINER,
    ".json": ImportFormat.CANONICAL_JSON,
    ".csv": ImportFormat.DELIMITED_TEXT,
    ".tsv": ImportFormat.DELIMITED_TEXT,
}

SUPPORTED_EXTENSIONS = set(EXTENSIONS) | {".txt"}


def first_content_line(content: bytes) -> bytes:
    """Return the first non-blank line that is not a ``#key:value`` directive."""
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(b"#"):
            continue
        return line
    return b""


def declares_separator(content: bytes) -> bool:
    """True when the leading directives include ``#separator:``."""
    for line in content.splitlines():
        stripped = line.strip().lstrip(b"\xef\xbb\xbf")
        if not stripped:
            continue
        if not stripped.startswith(b"#"):
            return False
        if stripped[1:].lower().startswith(b"separator:"):
            return True
    return False


def detect_format(filename: str, content: bytes) -> ImportFormat:
    """Pick the parser for a file from its signature and extension.

    Raises:
        UnsupportedFormat: Neither the signature nor the extension is recognised.
    """
    ext = PurePath(filename).suffix.lower()

    if content.startswith(ZIP_SIGNATURE) or EXTENSIONS.get(ext) is ImportFormat.CONTAINER:
        fmt = ImportFormat.CONTAINER
    elif ext in EXTENSIONS:
        fmt = EXTENSIONS[ext]
    elif ext == ".txt":
        if b"\t" in first_content_line(content) or declares_separator(content):
            fmt = ImportFormat.DELIMITED_TEXT
        else:
            fmt = ImportFormat.PLAIN_TEXT
    elif content.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"{"):
        fmt = ImportFormat.CANONICAL_JSON
    else:
        raise UnsupportedFormat(
            f"Unsupported file type: {ext or filename!r}. Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    logger.info("Detected %s as %s", filename, fmt.value)
    return fmt
