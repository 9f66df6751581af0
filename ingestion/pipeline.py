"""Deck interchange orchestrator: detect, parse, normalize and build cards.

The pipeline never persists anything. It returns a complete deck and card list
that the caller saves in one step, so a failed import leaves storage untouched.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePath

from backend.config import utcnow
from backend.domain import Card, Deck, State
from backend.errors import EmptyResult, LineParseWarning
from backend.srs.fsrs import FSRS, MAX_DIFFICULTY, MIN_DIFFICULTY
from ingestion.apkg import build_apkg, parse_apkg
from ingestion.canonical_json import dump_deck_json, parse_canonical_json
from ingestion.delimited import parse_delimited, write_csv
from ingestion.file_handlers import ImportFormat, detect_format
from ingestion.normalizer import normalize_html
from ingestion.plain_text import parse_plain_text
from ingestion.records import ParsedDeck, ParsedRecord
from ingestion.utils import ProgressCallback, ProgressReporter, decode_text

logger = logging.getLogger(__name__)

DEFAULT_EASE = 2.5


@dataclass
class ImportResult:
    """A complete, not yet persisted import."""

    deck: Deck
    cards: list[Card]
    format: ImportFormat
    warnings: list[LineParseWarning] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.warnings)


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    CONTAINER = "apkg"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def media_type(self) -> str:
        return {
            ExportFormat.JSON: "application/json",
            ExportFormat.CSV: "text/csv",
            ExportFormat.CONTAINER: "application/zip",
        }[self]


def default_deck_name(fmt: ImportFormat, filename: str) -> str:
    if fmt == ImportFormat.PLAIN_TEXT:
        return f"Text Import - {PurePath(filename).name}"
    return f"Imported Deck - {PurePath(filename).stem}"


def difficulty_from_ease(ease: float | None) -> float | None:
    """Map an ease factor (1.3 hardest, 2.5 default) onto difficulty 1-10."""
    if not ease:
        return None
    difficulty = 5 - (ease - DEFAULT_EASE) * 5 / 1.2
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))


def stamp_positions(cards: list[Card], start: datetime) -> list[Card]:
    """Give cards strictly increasing creation times in list order.

    Storage and the new-card queue order by ``created_at``, so cards created in
    one batch keep their source order.
    """
    for position, card in enumerate(cards):
        card.created_at = start + timedelta(microseconds=position)
    return cards


def apply_history(card: Card, record: ParsedRecord, now: datetime) -> Card:
    """Carry a source card's review history onto a freshly created card."""
    if record.reps is None:
        return card
    card.reps = record.reps
    card.lapses = record.lapses or 0
    card.state = record.state or State.REVIEW
    card.due = record.due or now
    interval = record.interval_days or 0.0
    if interval > 0:
        card.scheduled_days = interval
        card.last_review = min(card.due - timedelta(days=interval), now)
        if card.state == State.REVIEW:
            # At the target retention a review interval equals the stability
            card.stability = interval
    difficulty = difficulty_from_ease(record.ease_factor)
    if difficulty is not None and math.isfinite(difficulty):
        card.difficulty = difficulty
    return card


def fill_memory_defaults(card: Card, scheduler: FSRS) -> Card:
    """Give unreviewed cards without a memory model the scheduler's prior."""
    if card.state == State.NEW and card.stability <= 0:
        prior = scheduler.create_card(card.front, card.back, card.deck_id)
        card.stability = prior.stability
        card.difficulty = prior.difficulty
    return card


def parse_records(fmt: ImportFormat, content: bytes, filename: str, progress: ProgressReporter, now: datetime) -> ParsedDeck:
    if fmt == ImportFormat.CONTAINER:
        return parse_apkg(content, filename, progress, now=now)
    text = decode_text(content)
    if fmt == ImportFormat.DELIMITED_TEXT:
        return parse_delimited(text, progress)
    return parse_plain_text(text, progress)


def build_cards(parsed: ParsedDeck, deck: Deck, scheduler: FSRS, now: datetime) -> list[Card]:
    cards = []
    for record in parsed.records:
        front = normalize_html(record.front)
        back = normalize_html(record.back)
        media = list(record.media)
        if parsed.media is not None:
            front, front_media = parsed.media.rewrite(front)
            back, back_media = parsed.media.rewrite(back)
            for item in front_media + back_media:
                if item not in media:
                    media.append(item)
        if not front or not back:
            logger.warning("Skipping card with empty content after normalization")
            continue
        card = scheduler.create_card(front, back, deck.id, record.tags, now=now)
        card.media = media
        cards.append(apply_history(card, record, now))
    return stamp_positions(cards, now)


def import_deck(
    filename: str,
    content: bytes,
    deck_name: str | None = None,
    progress: ProgressCallback | None = None,
    scheduler: FSRS | None = None,
    now: datetime | None = None,
) -> ImportResult:
    """Import one file into a new deck.

    Args:
        filename: Original file name, used for format detection and the default deck name.
        content: Raw file bytes.
        deck_name: Overrides the deck name found in (or derived from) the file.
        progress: Receives non-decreasing percentages 0-100.
        scheduler: Creates the cards; defaults to one built from settings.
        now: Import time, defaults to the current UTC time.

    Raises:
        UnsupportedFormat: The file type cannot be detected.
        MalformedContainer: A container archive cannot be read.
        EmptyResult: The file was read but produced no cards.
    """
    now = now or utcnow()
    scheduler = scheduler or FSRS.from_settings()
    report = ProgressReporter(progress)
    report(0)

    fmt = detect_format(filename, content)
    logger.info("Importing %s as %s", filename, fmt.value)

    if fmt == ImportFormat.CANONICAL_JSON:
        deck, cards = parse_canonical_json(decode_text(content), report.scaled(0, 90), now=now)
        if deck_name:
            deck.name = deck_name
        for card in cards:
            fill_memory_defaults(card, scheduler)
        warnings: list[LineParseWarning] = []
    else:
        parsed = parse_records(fmt, content, filename, report.scaled(0, 80), now)
        deck = Deck(
            name=deck_name or parsed.deck_name or default_deck_name(fmt, filename),
            description=parsed.description or f"Imported from {PurePath(filename).name} on {now:%Y-%m-%d}",
            created_at=now,
            updated_at=now,
        )
        cards = build_cards(parsed, deck, scheduler, now)
        warnings = parsed.warnings
        report(90)

    if not cards:
        raise EmptyResult(f"No valid cards found in {filename}")

    deck.recount(cards, now)
    report(100)
    logger.info(
        "Imported %d cards into deck %s (%d new, %d due, %d lines skipped)",
        deck.card_count,
        deck.name,
        deck.new_card_count,
        deck.due_card_count,
        len(warnings),
    )
    return ImportResult(deck=deck, cards=cards, format=fmt, warnings=warnings)


def import_path(path: Path, **kwargs) -> ImportResult:
    """Read a file from disk and import it."""
    logger.info("Reading %s", path)
    return import_deck(path.name, path.read_bytes(), **kwargs)


def export_deck(deck: Deck, cards: list[Card], fmt: ExportFormat | str, now: datetime | None = None) -> bytes:
    """Serialize a deck in the requested format."""
    fmt = ExportFormat(fmt)
    members = [c for c in cards if c.deck_id == deck.id]
    logger.info("Exporting deck %s (%d cards) as %s", deck.name, len(members), fmt.value)
    if fmt == ExportFormat.JSON:
        return dump_deck_json(deck, members, now=now).encode("utf-8")
    if fmt == ExportFormat.CSV:
        return write_csv(members).encode("utf-8")
    return build_apkg(deck, members, now=now)


def export_filename(deck: Deck, fmt: ExportFormat) -> str:
    """A filesystem-safe download name like ``my_deck_flashcards.json``."""
    stem = "".join(ch if ch.isascii() and ch.isalnum() else "_" for ch in deck.name).lower()
    return f"{stem}_flashcards{fmt.extension}"
