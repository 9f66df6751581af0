"""Queue management for study sessions.

Handles card prioritization, mixing new cards with reviews,
and the per-deck session limits that prevent overwhelm.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from backend.config import utcnow
from backend.domain import Card, DeckSettings, State

logger = logging.getLogger(__name__)


@dataclass
class ReviewQueue:
    """A prepared queue of cards for a study session."""

    due_cards: list[Card] = field(default_factory=list)
    new_cards: list[Card] = field(default_factory=list)
    total: int = 0

    def interleaved(self) -> list[Card]:
        """Due cards in order, with new cards spread evenly between them."""
        if not self.new_cards or not self.due_cards:
            return self.due_cards + self.new_cards

        gap = max(1, len(self.due_cards) // (len(self.new_cards) + 1))
        pending = list(self.new_cards)
        result: list[Card] = []
        for position, card in enumerate(self.due_cards, start=1):
            result.append(card)
            if pending and position % gap == 0:
                result.append(pending.pop(0))
        # Leftover new cards go last
        return result + pending


def build_queue(
    cards: list[Card],
    deck_settings: DeckSettings | None = None,
    now: datetime | None = None,
) -> ReviewQueue:
    """Build a study queue from a deck's cards.

    Due cards (learning, review and relearning) come most-overdue first and are
    capped by ``max_reviews``; unseen cards are capped by ``new_cards_per_day``.
    Both caps apply to each queue built, not to a calendar day: cards already
    introduced today are not counted, so a rebuilt queue offers a fresh batch.

    Args:
        cards: All cards of the deck being studied.
        deck_settings: Session limits (defaults to the global deck defaults).
        now: Current time (defaults to utcnow).

    Returns:
        A ReviewQueue with due and new cards.
    """
    deck_settings = deck_settings or DeckSettings()
    now = now or utcnow()

    due_cards = sorted(
        (c for c in cards if c.state != State.NEW and c.due <= now),
        key=lambda c: c.due,
    )[: max(0, deck_settings.max_reviews)]

    # Oldest first (FIFO)
    new_cards = sorted(
        (c for c in cards if c.state == State.NEW),
        key=lambda c: c.created_at,
    )[: max(0, deck_settings.new_cards_per_day)]

    queue = ReviewQueue(
        due_cards=due_cards,
        new_cards=new_cards,
        total=len(due_cards) + len(new_cards),
    )

    logger.info(
        "Built queue: %d due + %d new = %d total",
        len(due_cards),
        len(new_cards),
        queue.total,
    )
    return queue
