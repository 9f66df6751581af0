"""Delimited text (CSV/TSV) import and CSV export.

Import accepts one card per line with columns ``Front, Back, Tags?``. The
separator is a tab when the first data line contains one, a comma otherwise.
Anki's plain-text notes export prefixes ``#key:value`` directive lines; those
are read for the separator, deck name and tags column, and never imported.
"""

import csv
import io
import logging
import re

from backend.domain import Card
from backend.errors import LineParseWarning
from ingestion.constants import PROGRESS_EVERY_LINES
from ingestion.records import ParsedDeck, ParsedRecord
from ingestion.utils import ProgressCallback, ProgressReporter, split_tags

logger = logging.getLogger(__name__)

# "Front", "Question:", "Front side", "Front (English)"
_HEADER_CELL = re.compile(r"^(?:front|question)(?:\s+side)?\s*(?:\(.*\))?:?$", re.IGNORECASE)

SEPARATOR_NAMES = {
    "tab": "\t",
    "comma": ",",
    "semicolon": ";",
    "space": " ",
    "pipe": "|",
    "colon": ":",
}

EXPORT_HEADERS = ["Front", "Back", "Tags", "State", "Reps", "Due Date", "Created At"]


def read_directives(lines: list[str]) -> tuple[dict[str, str], int]:
    """Collect leading ``#key:value`` lines. Returns the directives and the first data line index."""
    directives: dict[str, str] = {}
    index = 0
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("#") or ":" not in stripped:
            return directives, index
        key, _, value = stripped[1:].partition(":")
        directives[key.strip().lower()] = value.strip()
    else:
        index = len(lines)
    return directives, index


def resolve_separator(directive: str | None, first_line: str) -> str:
    if directive:
        return SEPARATOR_NAMES.get(directive.lower(), directive[0])
    return "\t" if "\t" in first_line else ","


def split_line(line: str, separator: str) -> list[str]:
    """Split one line honouring quotes; doubled quotes escape a literal quote.

    Raises:
        csv.Error: The line has unbalanced quoting.
    """
    row = next(csv.reader([line], delimiter=separator, quotechar='"', strict=True), [])
    return [value.strip() for value in row]


def is_header(fields: list[str]) -> bool:
    """A first row whose front cell is a column label rather than card content."""
    return bool(fields) and _HEADER_CELL.match(fields[0].strip()) is not None


def parse_delimited(text: str, progress: ProgressCallback | None = None) -> ParsedDeck:
    """Parse CSV/TSV text into records. Bad lines are skipped and reported as warnings."""
    report = ProgressReporter(progress)
    report(0)

    lines = text.splitlines()
    directives, start = read_directives(lines)
    numbered = [(n + 1, line) for n, line in enumerate(lines) if n >= start and line.strip()]
    result = ParsedDeck(deck_name=directives.get("deck") or None)
    if not numbered:
        report(100)
        return result

    separator = resolve_separator(directives.get("separator"), numbered[0][1])
    # Comma files list tags comma-separated, everything else whitespace-separated
    tag_separator = "," if separator == "," else None
    try:
        tags_column = int(directives.get("tags column", "3")) - 1
    except ValueError:
        tags_column = 2

    total = len(numbered)
    for position, (line_number, line) in enumerate(numbered):
        if position and position % PROGRESS_EVERY_LINES == 0:
            report(100 * position / total)

        try:
            fields = split_line(line, separator)
        except csv.Error as e:
            _skip(result, line_number, line, f"could not split line: {e}")
            continue

        if position == 0 and is_header(fields):
            logger.debug("Skipping header row: %s", line)
            continue

        front = fields[0] if fields else ""
        back = fields[1] if len(fields) > 1 else ""
        if not front or not back:
            _skip(result, line_number, line, "missing front or back")
            continue

        raw_tags = fields[tags_column] if 0 <= tags_column < len(fields) else ""
        result.records.append(ParsedRecord(front=front, back=back, tags=split_tags(raw_tags, tag_separator)))

    report(100)
    logger.info(
        "Parsed %d records from %d lines (%d skipped, separator %r)",
        len(result.records),
        total,
        result.skipped,
        separator,
    )
    return result


def _skip(result: ParsedDeck, line_number: int, line: str, reason: str) -> None:
    warning = LineParseWarning(line_number, line, reason)
    logger.warning("Skipping line %d: %s", line_number, reason)
    result.warnings.append(warning)


def write_csv(cards: list[Card]) -> str:
    """Render cards as CSV with a header row, one card per line."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for card in cards:
        writer.writerow(
            [
                card.front,
                card.back,
                ", ".join(card.tags),
                card.state.name.lower(),
                card.reps,
                card.due.date().isoformat(),
                card.created_at.date().isoformat(),
            ]
        )
    return buffer.getvalue()
