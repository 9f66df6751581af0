"""Canonical deck and card representation.

These are plain values: the scheduler returns new ``Card`` instances instead of
mutating its input, and cards refer to their deck only through ``deck_id``.
"""

import mimetypes
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from pathlib import PurePosixPath

from backend.config import settings, utcnow


class State(IntEnum):
    """Memory-model state of a card."""

    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class Rating(IntEnum):
    """Self-reported recall quality."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


MEDIA_TYPES = ("image", "audio", "video")


def new_id() -> str:
    return str(uuid.uuid4())


def media_type_for(filename: str) -> str:
    """Guess image/audio/video from a filename, defaulting to image."""
    mime, _ = mimetypes.guess_type(filename)
    if mime:
        major = mime.split("/", 1)[0]
        if major in MEDIA_TYPES:
            return major
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix in {".mp3", ".ogg", ".oga", ".wav", ".m4a", ".flac", ".opus"}:
        return "audio"
    if suffix in {".mp4", ".webm", ".mkv", ".mov", ".ogv"}:
        return "video"
    return "image"


@dataclass
class MediaFile:
    """A binary asset referenced from a card's content."""

    filename: str
    data: bytes
    media_type: str = ""

    def __post_init__(self) -> None:
        if not self.media_type:
            self.media_type = media_type_for(self.filename)

    @property
    def mime_type(self) -> str:
        mime, _ = mimetypes.guess_type(self.filename)
        if mime:
            return mime
        return {"audio": "audio/mpeg", "video": "video/mp4"}.get(self.media_type, "application/octet-stream")


@dataclass
class Card:
    """A question/answer card with its FSRS scheduling state."""

    front: str
    back: str
    deck_id: str
    tags: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    state: State = State.NEW
    due: datetime = field(default_factory=utcnow)
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    learning_steps: int = 0
    reps: int = 0
    lapses: int = 0
    last_review: datetime | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    media: list[MediaFile] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.state = State(self.state)
        # Tags are a set semantically; keep first-seen order for display.
        self.tags = list(dict.fromkeys(t.strip() for t in self.tags if t and t.strip()))


@dataclass
class DeckSettings:
    """Per-deck study limits. ``show_answer_timer``/``auto_advance`` are UI pass-through.

    ``new_cards_per_day`` and ``max_reviews`` cap a single study queue; the
    names follow the common deck option, but nothing tracks what was studied
    earlier in the day.
    """

    new_cards_per_day: int = settings.new_cards_per_day
    max_reviews: int = settings.max_reviews
    show_answer_timer: bool = True
    auto_advance: bool = False


@dataclass
class Deck:
    """A named collection of cards.

    The counters are caches; ``recount`` rebuilds them from the member cards.
    """

    name: str
    description: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    card_count: int = 0
    new_card_count: int = 0
    due_card_count: int = 0
    settings: DeckSettings = field(default_factory=DeckSettings)

    def recount(self, cards: list[Card], now: datetime | None = None) -> "Deck":
        """Recompute the derived counters from ``cards`` belonging to this deck."""
        now = now or utcnow()
        members = [c for c in cards if c.deck_id == self.id]
        self.card_count = len(members)
        self.new_card_count = sum(1 for c in members if c.state == State.NEW)
        self.due_card_count = sum(1 for c in members if c.due <= now)
        return self
