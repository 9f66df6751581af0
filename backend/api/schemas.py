"""Pydantic schemas for API request/response models."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Decks ---


class DeckSettingsSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    new_cards_per_day: int = Field(20, ge=0)
    max_reviews: int = Field(200, ge=0)
    show_answer_timer: bool = True
    auto_advance: bool = False


class DeckCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    settings: DeckSettingsSchema | None = None


class DeckUpdate(BaseModel):
    """Partial deck update; omitted fields are left unchanged."""

    name: str | None = Field(None, min_length=1)
    description: str | None = None
    settings: DeckSettingsSchema | None = None


class DeckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    created_at: datetime
    updated_at: datetime
    card_count: int
    new_card_count: int
    due_card_count: int
    settings: DeckSettingsSchema


# --- Cards ---


class MediaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    filename: str
    media_type: str


class CardCreate(BaseModel):
    front: str = Field(..., min_length=1)
    back: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)


class CardUpdate(BaseModel):
    """Content edit. Scheduling state only changes through reviews."""

    front: str | None = Field(None, min_length=1)
    back: str | None = Field(None, min_length=1)
    tags: list[str] | None = None


class CardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    deck_id: str
    front: str
    back: str
    tags: list[str]
    state: int  # 0=New, 1=Learning, 2=Review, 3=Relearning
    due: datetime
    stability: float
    difficulty: float
    elapsed_days: float
    scheduled_days: float
    reps: int
    lapses: int
    last_review: datetime | None
    created_at: datetime
    updated_at: datetime
    media: list[MediaResponse] = Field(default_factory=list)


# --- Review ---


class ReviewRequest(BaseModel):
    grade: int  # 1=Again, 2=Hard, 3=Good, 4=Easy


class ReviewOptionResponse(BaseModel):
    interval: str
    due: datetime
    state: int


class ReviewOptionsResponse(BaseModel):
    card_id: str
    retention: float
    again: ReviewOptionResponse
    hard: ReviewOptionResponse
    good: ReviewOptionResponse
    easy: ReviewOptionResponse


class QueueResponse(BaseModel):
    deck_id: str
    due_count: int
    new_count: int
    total: int
    cards: list[CardResponse]


# --- Stats ---


class StatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_cards: int
    due_cards: int
    new_cards: int
    learning_cards: int
    mature_cards: int  # Review state with stability over 21 days
    total_reviews: int
    total_lapses: int


# --- Import ---


class ImportResponse(BaseModel):
    deck: DeckResponse
    format: str
    imported: int
    skipped: int
    warnings: list[str] = Field(default_factory=list)
