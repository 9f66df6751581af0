"""Exception taxonomy shared by the scheduler and the interchange pipeline."""


class FlashdeckError(Exception):
    """Base class for all errors raised by this project."""


class InvalidGrade(FlashdeckError, ValueError):
    """A review grade outside Again/Hard/Good/Easy (1-4)."""

    def __init__(self, grade: object) -> None:
        self.grade = grade
        super().__init__(f"Invalid grade {grade!r}: expected 1 (Again), 2 (Hard), 3 (Good) or 4 (Easy)")


class DeckImportError(FlashdeckError):
    """Base class for failures that abort a whole import."""


class UnsupportedFormat(DeckImportError, ValueError):
    """The file extension or signature does not match any known format."""


class MalformedContainer(DeckImportError):
    """A container archive is missing required members or its database is unreadable."""

    advice = (
        'Export the deck from Anki as "Notes in Plain Text (.txt)" '
        "and import the text file instead."
    )

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"{reason}. {self.advice}")


class EmptyResult(DeckImportError):
    """The format was recognised but no valid cards could be read from it."""


class LineParseWarning(UserWarning):
    """A single text/CSV line that was skipped during import.

    Collected on the parse result rather than raised.
    """

    def __init__(self, line_number: int, line: str, reason: str) -> None:
        self.line_number = line_number
        self.line = line
        self.reason = reason
        super().__init__(f"Line {line_number}: {reason}")


class DeckNotFound(FlashdeckError, LookupError):
    """A card was saved with a deck id that does not exist."""

    def __init__(self, deck_id: str) -> None:
        self.deck_id = deck_id
        super().__init__(f"Deck {deck_id} not found")
