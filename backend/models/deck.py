from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin


class Deck(Base, TimestampMixin):
    __tablename__ = "decks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Study settings
    new_cards_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    max_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    show_answer_timer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_advance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    cards: Mapped[list["Card"]] = relationship(  # type: ignore[name-defined] # noqa: F821
        back_populates="deck", cascade="all, delete-orphan", passive_deletes=True
    )
