"""Canonical JSON deck dump: import and export.

Layout::

    {
      "deck": {"id", "name", "description", "createdAt", "updatedAt",
               "cardCount", "newCardCount", "dueCardCount", "settings",
               "exportedAt", "version"},
      "cards": [{"id", "front", "back", "deckId", "tags", "createdAt",
                 "updatedAt", "due", "stability", "difficulty", "elapsed_days",
                 "scheduled_days", "learning_steps", "reps", "lapses", "state",
                 "last_review", "media"}]
    }

Dates are ISO-8601 strings; media payloads are base64.
"""

import base64
import binascii
import json
import logging
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backend.config import as_naive_utc, utcnow
from backend.domain import Card, Deck, DeckSettings, MediaFile, State, new_id
from backend.errors import UnsupportedFormat
from ingestion.constants import EXPORT_VERSION
from ingestion.utils import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)


class MediaPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    media_type: str = Field("", alias="type")
    data: str = ""


class SettingsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_cards_per_day: int = Field(DeckSettings.new_cards_per_day, alias="newCardsPerDay")
    max_reviews: int = Field(DeckSettings.max_reviews, alias="maxReviews")
    show_answer_timer: bool = Field(True, alias="showAnswerTimer")
    auto_advance: bool = Field(False, alias="autoAdvance")


class DeckPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    name: str
    description: str | None = None
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime | None = Field(None, alias="updatedAt")
    card_count: int = Field(0, alias="cardCount")
    new_card_count: int = Field(0, alias="newCardCount")
    due_card_count: int = Field(0, alias="dueCardCount")
    settings: SettingsPayload = Field(default_factory=SettingsPayload)
    exported_at: datetime | None = Field(None, alias="exportedAt")
    version: str | None = None


class CardPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    front: str
    back: str
    deck_id: str | None = Field(None, alias="deckId")
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime | None = Field(None, alias="updatedAt")
    due: datetime | None = None
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    learning_steps: int = 0
    reps: int = Field(0, ge=0)
    lapses: int = Field(0, ge=0)
    state: State = State.NEW
    last_review: datetime | None = None
    media: list[MediaPayload] = Field(default_factory=list)


class DeckDump(BaseModel):
    deck: DeckPayload
    cards: list[CardPayload]


def _naive(value: datetime | None, default: datetime | None) -> datetime | None:
    return as_naive_utc(value) if value is not None else default


def _aware(value: datetime | None) -> datetime | None:
    return value.replace(tzinfo=UTC) if value is not None else None


def _decode_media(payload: MediaPayload) -> MediaFile | None:
    try:
        data = base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Dropping media %s: payload is not valid base64", payload.filename)
        return None
    return MediaFile(filename=payload.filename, data=data, media_type=payload.media_type)


def load_dump(text: str) -> DeckDump:
    """Validate the dump structure.

    Raises:
        UnsupportedFormat: The text is not JSON or lacks the deck/cards layout.
    """
    try:
        return DeckDump.model_validate(json.loads(text))
    except json.JSONDecodeError as e:
        raise UnsupportedFormat(f"File is not valid JSON: {e}") from e
    except ValidationError as e:
        raise UnsupportedFormat(
            f"Invalid JSON format. Expected deck and cards properties ({e.error_count()} errors)"
        ) from e


def parse_canonical_json(
    text: str,
    progress: ProgressCallback | None = None,
    now: datetime | None = None,
) -> tuple[Deck, list[Card]]:
    """Rebuild a deck and its cards from a dump under fresh ids.

    Card deck references are rewritten to the new deck id and the deck
    counters are recomputed from the cards.
    """
    now = now or utcnow()
    report = ProgressReporter(progress)
    report(0)

    dump = load_dump(text)
    report(20)

    payload = dump.deck
    deck = Deck(
        name=payload.name,
        description=payload.description,
        created_at=_naive(payload.created_at, now),
        updated_at=now,
        settings=DeckSettings(**payload.settings.model_dump()),
    )

    cards = []
    total = len(dump.cards)
    for index, item in enumerate(dump.cards):
        media = [m for m in (_decode_media(p) for p in item.media) if m is not None]
        cards.append(
            Card(
                id=new_id(),
                front=item.front,
                back=item.back,
                deck_id=deck.id,
                tags=item.tags,
                state=item.state,
                due=_naive(item.due, now),
                stability=item.stability,
                difficulty=item.difficulty,
                elapsed_days=item.elapsed_days,
                scheduled_days=item.scheduled_days,
                learning_steps=item.learning_steps,
                reps=item.reps,
                lapses=item.lapses,
                last_review=_naive(item.last_review, None),
                created_at=_naive(item.created_at, now + timedelta(microseconds=index)),
                updated_at=now,
                media=media,
            )
        )
        report(20 + 80 * (index + 1) / total)

    deck.recount(cards, now)
    report(100)
    logger.info("Loaded deck %s with %d cards from JSON dump", deck.name, len(cards))
    return deck, cards


def dump_deck_json(deck: Deck, cards: list[Card], now: datetime | None = None) -> str:
    """Serialize a deck and its cards in the canonical dump layout."""
    now = now or utcnow()
    deck.recount(cards, now)
    dump = DeckDump(
        deck=DeckPayload(
            id=deck.id,
            name=deck.name,
            description=deck.description,
            created_at=_aware(deck.created_at),
            updated_at=_aware(deck.updated_at),
            card_count=deck.card_count,
            new_card_count=deck.new_card_count,
            due_card_count=deck.due_card_count,
            settings=SettingsPayload(**vars(deck.settings)),
            exported_at=_aware(now),
            version=EXPORT_VERSION,
        ),
        cards=[
            CardPayload(
                id=card.id,
                front=card.front,
                back=card.back,
                deck_id=card.deck_id,
                tags=card.tags,
                created_at=_aware(card.created_at),
                updated_at=_aware(card.updated_at),
                due=_aware(card.due),
                stability=card.stability,
                difficulty=card.difficulty,
                elapsed_days=card.elapsed_days,
                scheduled_days=card.scheduled_days,
                learning_steps=card.learning_steps,
                reps=card.reps,
                lapses=card.lapses,
                state=card.state,
                last_review=_aware(card.last_review),
                media=[
                    MediaPayload(
                        filename=m.filename,
                        media_type=m.media_type,
                        data=base64.b64encode(m.data).decode("ascii"),
                    )
                    for m in card.media
                ],
            )
            for card in cards
        ],
    )
    return json.dumps(dump.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)
