"""Plain text import: alternating question and answer lines."""

import logging

from backend.errors import LineParseWarning
from ingestion.constants import PROGRESS_EVERY_LINES
from ingestion.records import ParsedDeck, ParsedRecord
from ingestion.utils import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)


def parse_plain_text(text: str, progress: ProgressCallback | None = None) -> ParsedDeck:
    """Pair each non-blank line with the next one as front and back.

    A trailing unpaired line is discarded and reported as a warning.
    """
    report = ProgressReporter(progress)
    report(0)

    lines = [(n + 1, line.strip()) for n, line in enumerate(text.splitlines()) if line.strip()]
    result = ParsedDeck(deck_name=None)

    for i in range(0, len(lines) - 1, 2):
        if i and i % PROGRESS_EVERY_LINES == 0:
            report(100 * i / len(lines))
        (_, front), (_, back) = lines[i], lines[i + 1]
        result.records.append(ParsedRecord(front=front, back=back))

    if len(lines) % 2:
        line_number, line = lines[-1]
        logger.warning("Discarding unpaired trailing line %d", line_number)
        result.warnings.append(LineParseWarning(line_number, line, "no answer line follows this question"))

    report(100)
    logger.info("Parsed %d records from %d lines", len(result.records), len(lines))
    return result
