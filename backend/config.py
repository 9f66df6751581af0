from datetime import UTC, datetime
from pathlib import Path

from pydantic_settings import BaseSettings


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    Replaces the deprecated ``datetime.utcnow()`` while keeping datetimes
    naive so they stay compatible with SQLite (which doesn't store tz info).
    """
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Settings(BaseSettings):
    app_name: str = "Flashdeck"
    database_url: str = f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'data' / 'flashdeck.db'}"

    # Scheduler
    request_retention: float = 0.9
    maximum_interval: int = 36500  # 100 years
    enable_fuzz: bool = True
    learning_steps_minutes: list[int] = [1, 10]
    relearning_steps_minutes: list[int] = [10]

    # Deck defaults
    new_cards_per_day: int = 20
    max_reviews: int = 200

    debug: bool = False

    model_config = {"env_prefix": "FLASHDECK_", "env_file": ".env"}


settings = Settings()
