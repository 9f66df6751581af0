"""Study statistics computed from card scheduling state."""

from dataclasses import dataclass
from datetime import datetime

from backend.config import utcnow
from backend.domain import Card, State

# Review cards whose stability exceeds this many days count as mature
MATURE_STABILITY_DAYS = 21


@dataclass
class StudyStats:
    total_cards: int = 0
    due_cards: int = 0
    new_cards: int = 0
    learning_cards: int = 0
    mature_cards: int = 0
    total_reviews: int = 0
    total_lapses: int = 0


def compute_stats(cards: list[Card], now: datetime | None = None) -> StudyStats:
    now = now or utcnow()
    return StudyStats(
        total_cards=len(cards),
        due_cards=sum(1 for c in cards if c.due <= now),
        new_cards=sum(1 for c in cards if c.state == State.NEW),
        learning_cards=sum(1 for c in cards if c.state in (State.LEARNING, State.RELEARNING)),
        mature_cards=sum(
            1 for c in cards if c.state == State.REVIEW and c.stability > MATURE_STABILITY_DAYS
        ),
        total_reviews=sum(c.reps for c in cards),
        total_lapses=sum(c.lapses for c in cards),
    )
