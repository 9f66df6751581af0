"""Async persistence for decks and cards.

Maps the ``backend.domain`` values onto the ORM tables. Every lookup is total:
a missing id returns ``None`` (or ``False`` for deletes) instead of raising.
Deck counters are never trusted from storage; they are recomputed on read.
"""

import json
import logging
from datetime import datetime

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend import models
from backend.config import utcnow
from backend.database import async_session, engine
from backend.domain import Card, Deck, DeckSettings, MediaFile, State
from backend.errors import DeckNotFound

logger = logging.getLogger(__name__)


async def ensure_db() -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


def deck_from_row(row: models.Deck) -> Deck:
    return Deck(
        id=row.id,
        name=row.name,
        description=row.description,
        created_at=row.created_at,
        updated_at=row.updated_at,
        settings=DeckSettings(
            new_cards_per_day=row.new_cards_per_day,
            max_reviews=row.max_reviews,
            show_answer_timer=row.show_answer_timer,
            auto_advance=row.auto_advance,
        ),
    )


def card_from_row(row: models.Card) -> Card:
    return Card(
        id=row.id,
        deck_id=row.deck_id,
        front=row.front,
        back=row.back,
        tags=json.loads(row.tags or "[]"),
        state=State(row.state),
        due=row.due,
        stability=row.stability,
        difficulty=row.difficulty,
        elapsed_days=row.elapsed_days,
        scheduled_days=row.scheduled_days,
        learning_steps=row.learning_steps,
        reps=row.reps,
        lapses=row.lapses,
        last_review=row.last_review,
        created_at=row.created_at,
        updated_at=row.updated_at,
        media=[MediaFile(filename=m.filename, data=m.data, media_type=m.media_type) for m in row.media],
    )


def apply_deck(row: models.Deck, deck: Deck) -> models.Deck:
    row.name = deck.name
    row.description = deck.description
    row.created_at = deck.created_at
    row.updated_at = deck.updated_at
    row.new_cards_per_day = deck.settings.new_cards_per_day
    row.max_reviews = deck.settings.max_reviews
    row.show_answer_timer = deck.settings.show_answer_timer
    row.auto_advance = deck.settings.auto_advance
    return row


def apply_card(row: models.Card, card: Card) -> models.Card:
    row.deck_id = card.deck_id
    row.front = card.front
    row.back = card.back
    row.tags = json.dumps(card.tags, ensure_ascii=False)
    row.state = int(card.state)
    row.due = card.due
    row.stability = card.stability
    row.difficulty = card.difficulty
    row.elapsed_days = card.elapsed_days
    row.scheduled_days = card.scheduled_days
    row.learning_steps = card.learning_steps
    row.reps = card.reps
    row.lapses = card.lapses
    row.last_review = card.last_review
    row.created_at = card.created_at
    row.updated_at = card.updated_at
    row.media = [models.MediaFile(filename=m.filename, media_type=m.media_type, data=m.data) for m in card.media]
    return row


class Storage:
    """Deck and card repository over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session) -> None:
        self.session_factory = session_factory

    # --- Decks ---

    async def _counts(self, db: AsyncSession, now: datetime, deck_id: str | None = None) -> dict[str, tuple[int, int, int]]:
        stmt = select(
            models.Card.deck_id,
            func.count(models.Card.id),
            func.sum(case((models.Card.state == int(State.NEW), 1), else_=0)),
            func.sum(case((models.Card.due <= now, 1), else_=0)),
        ).group_by(models.Card.deck_id)
        if deck_id is not None:
            stmt = stmt.where(models.Card.deck_id == deck_id)
        result = await db.execute(stmt)
        return {row[0]: (row[1], row[2] or 0, row[3] or 0) for row in result.all()}

    def _with_counts(self, deck: Deck, counts: dict[str, tuple[int, int, int]]) -> Deck:
        deck.card_count, deck.new_card_count, deck.due_card_count = counts.get(deck.id, (0, 0, 0))
        return deck

    async def get_decks(self, now: datetime | None = None) -> list[Deck]:
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(select(models.Deck).order_by(models.Deck.created_at))
            rows = result.scalars().all()
            counts = await self._counts(db, now)
        return [self._with_counts(deck_from_row(row), counts) for row in rows]

    async def get_deck(self, deck_id: str, now: datetime | None = None) -> Deck | None:
        now = now or utcnow()
        async with self.session_factory() as db:
            row = await db.get(models.Deck, deck_id)
            if row is None:
                return None
            counts = await self._counts(db, now, deck_id)
        return self._with_counts(deck_from_row(row), counts)

    async def save_deck(self, deck: Deck) -> Deck:
        async with self.session_factory() as db:
            row = await db.get(models.Deck, deck.id) or models.Deck(id=deck.id)
            db.add(apply_deck(row, deck))
            await db.commit()
        logger.debug("Saved deck %s (%s)", deck.id, deck.name)
        return deck

    async def delete_deck(self, deck_id: str) -> bool:
        """Delete a deck together with its cards and their media."""
        async with self.session_factory() as db:
            row = await db.get(models.Deck, deck_id)
            if row is None:
                return False
            card_ids = select(models.Card.id).where(models.Card.deck_id == deck_id)
            await db.execute(delete(models.MediaFile).where(models.MediaFile.card_id.in_(card_ids)))
            removed = await db.execute(delete(models.Card).where(models.Card.deck_id == deck_id))
            await db.execute(delete(models.Deck).where(models.Deck.id == deck_id))
            await db.commit()
        logger.info("Deleted deck %s and %d cards", deck_id, removed.rowcount)
        return True

    # --- Cards ---

    async def get_cards(self, deck_id: str | None = None) -> list[Card]:
        stmt = select(models.Card).order_by(models.Card.created_at, models.Card.id)
        if deck_id is not None:
            stmt = stmt.where(models.Card.deck_id == deck_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [card_from_row(row) for row in result.scalars().all()]

    async def get_card(self, card_id: str) -> Card | None:
        async with self.session_factory() as db:
            row = await db.get(models.Card, card_id)
            return card_from_row(row) if row is not None else None

    async def save_card(self, card: Card) -> Card:
        """Insert or update a card.

        Raises:
            DeckNotFound: ``card.deck_id`` does not name a stored deck.
        """
        async with self.session_factory() as db:
            if await db.get(models.Deck, card.deck_id) is None:
                raise DeckNotFound(card.deck_id)
            row = await db.get(models.Card, card.id) or models.Card(id=card.id)
            db.add(apply_card(row, card))
            await db.commit()
        return card

    async def delete_card(self, card_id: str) -> bool:
        async with self.session_factory() as db:
            row = await db.get(models.Card, card_id)
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
        return True

    async def get_due_cards(self, deck_id: str | None = None, now: datetime | None = None) -> list[Card]:
        """Cards whose due time has passed, most overdue first."""
        now = now or utcnow()
        stmt = select(models.Card).where(models.Card.due <= now).order_by(models.Card.due)
        if deck_id is not None:
            stmt = stmt.where(models.Card.deck_id == deck_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [card_from_row(row) for row in result.scalars().all()]

    async def get_new_cards(self, deck_id: str | None = None) -> list[Card]:
        stmt = (
            select(models.Card)
            .where(models.Card.state == int(State.NEW))
            .order_by(models.Card.created_at, models.Card.id)
        )
        if deck_id is not None:
            stmt = stmt.where(models.Card.deck_id == deck_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [card_from_row(row) for row in result.scalars().all()]

    # --- Import ---

    async def save_import(self, deck: Deck, cards: list[Card]) -> Deck:
        """Store a new deck and all of its cards in one transaction."""
        async with self.session_factory() as db, db.begin():
            db.add(apply_deck(models.Deck(id=deck.id), deck))
            db.add_all(apply_card(models.Card(id=card.id), card) for card in cards)
        logger.info("Saved imported deck %s with %d cards", deck.name, len(cards))
        return deck


def get_storage() -> Storage:
    """Storage instance for FastAPI dependency injection."""
    return Storage()
