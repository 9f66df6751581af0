"""Transient interchange records used while bridging a foreign schema to canonical cards."""

from dataclasses import dataclass, field
from datetime import datetime

from backend.domain import MediaFile, State
from backend.errors import LineParseWarning
from ingestion.media import MediaExtractor


@dataclass
class NoteRecord:
    """A source note: ordered field values plus a space-separated tag string."""

    id: int
    model_id: int
    fields: list[str]
    tags: str = ""

    @property
    def tag_list(self) -> list[str]:
        return [t for t in self.tags.split() if t]


@dataclass
class TemplateRecord:
    """Front/back markup with ``{{Field}}`` placeholders."""

    name: str
    ord: int
    front: str
    back: str


@dataclass
class ModelRecord:
    """A note type: field names in order and its card templates."""

    id: int
    name: str
    field_names: list[str]
    templates: list[TemplateRecord]
    is_cloze: bool = False

    def template_for(self, ord_: int) -> TemplateRecord | None:
        if self.is_cloze and self.templates:
            return self.templates[0]
        for template in self.templates:
            if template.ord == ord_:
                return template
        return self.templates[0] if self.templates else None


@dataclass
class SourceCard:
    """A source card row with scheduling counters in the source format's units."""

    id: int
    note_id: int
    deck_id: int
    ord: int
    type: int = 0  # 0=new, 1=learning, 2=review, 3=relearning
    queue: int = 0
    due: int = 0  # new: position, review: day number, learning: epoch seconds
    interval: int = 0  # days (negative: seconds)
    factor: int = 0  # ease in permille
    reps: int = 0
    lapses: int = 0

    @property
    def has_been_reviewed(self) -> bool:
        return self.type > 0 or self.interval > 0


@dataclass
class ParsedRecord:
    """One normalized-ready card produced by a parser."""

    front: str
    back: str
    tags: list[str] = field(default_factory=list)
    # Historical scheduling, only set for cards the source has reviewed
    reps: int | None = None
    lapses: int | None = None
    due: datetime | None = None
    state: State | None = None
    interval_days: float | None = None
    ease_factor: float | None = None
    media: list[MediaFile] = field(default_factory=list)


@dataclass
class ParsedDeck:
    """The output of a record-producing parser."""

    deck_name: str | None
    records: list[ParsedRecord] = field(default_factory=list)
    warnings: list[LineParseWarning] = field(default_factory=list)
    description: str | None = None
    # Container imports only: resolves media references after normalization
    media: MediaExtractor | None = None

    @property
    def skipped(self) -> int:
        return len(self.warnings)
