"""Tests for async deck and card persistence."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from backend import models
from backend.domain import Card, Deck, DeckSettings, MediaFile, Rating, State
from backend.errors import DeckNotFound
from backend.srs.fsrs import FSRS
from backend.storage import Storage, apply_card
from ingestion.pipeline import import_deck

NOW = datetime(2025, 3, 10, 12, 0, 0)


def _deck_with_cards(scheduler: FSRS, name: str = "Verbs", count: int = 3) -> tuple[Deck, list[Card]]:
    deck = Deck(name=name, created_at=NOW, updated_at=NOW)
    cards = [
        scheduler.create_card(f"q{i}", f"a{i}", deck.id, [f"tag{i}"], now=NOW + timedelta(seconds=i))
        for i in range(count)
    ]
    return deck, cards


class TestDecks:
    @pytest.mark.asyncio
    async def test_save_import_and_counts(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler)
        cards[0] = scheduler.review_card(cards[0], Rating.EASY, NOW)
        await storage.save_import(deck, cards)

        loaded = await storage.get_deck(deck.id, now=NOW + timedelta(seconds=10))
        assert loaded is not None
        assert loaded.name == "Verbs"
        assert loaded.card_count == 3
        assert loaded.new_card_count == 2
        assert loaded.due_card_count == 2

    @pytest.mark.asyncio
    async def test_get_decks(self, storage: Storage, scheduler: FSRS) -> None:
        first, first_cards = _deck_with_cards(scheduler, "First", 2)
        second = Deck(name="Second", created_at=NOW + timedelta(minutes=1))
        await storage.save_import(first, first_cards)
        await storage.save_deck(second)

        decks = await storage.get_decks(now=NOW + timedelta(minutes=5))
        assert [d.name for d in decks] == ["First", "Second"]
        assert [d.card_count for d in decks] == [2, 0]

    @pytest.mark.asyncio
    async def test_missing_deck(self, storage: Storage) -> None:
        assert await storage.get_deck("missing") is None
        assert await storage.delete_deck("missing") is False

    @pytest.mark.asyncio
    async def test_update_deck(self, storage: Storage) -> None:
        deck = Deck(name="Old", created_at=NOW, updated_at=NOW)
        await storage.save_deck(deck)
        deck.name = "New"
        deck.settings = DeckSettings(new_cards_per_day=5, max_reviews=50, auto_advance=True)
        await storage.save_deck(deck)

        loaded = await storage.get_deck(deck.id)
        assert loaded is not None
        assert loaded.name == "New"
        assert loaded.settings == DeckSettings(new_cards_per_day=5, max_reviews=50, auto_advance=True)

    @pytest.mark.asyncio
    async def test_delete_deck_removes_cards(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler)
        cards[0].media = [MediaFile(filename="a.png", data=b"png")]
        other, other_cards = _deck_with_cards(scheduler, "Other", 1)
        await storage.save_import(deck, cards)
        await storage.save_import(other, other_cards)

        assert await storage.delete_deck(deck.id) is True
        assert await storage.get_deck(deck.id) is None
        assert await storage.get_cards(deck.id) == []
        assert await storage.get_card(cards[0].id) is None
        assert len(await storage.get_cards(other.id)) == 1


class TestCards:
    @pytest.mark.asyncio
    async def test_card_round_trip(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=1)
        card = cards[0]
        card.media = [MediaFile(filename="meow.mp3", data=b"ID3\x00audio")]
        await storage.save_import(deck, cards)

        loaded = await storage.get_card(card.id)
        assert loaded == card
        assert loaded.media[0].media_type == "audio"

    @pytest.mark.asyncio
    async def test_missing_card(self, storage: Storage) -> None:
        assert await storage.get_card("missing") is None
        assert await storage.delete_card("missing") is False

    @pytest.mark.asyncio
    async def test_save_reviewed_card(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=1)
        await storage.save_import(deck, cards)

        reviewed = scheduler.review_card(cards[0], Rating.GOOD, NOW)
        await storage.save_card(reviewed)

        loaded = await storage.get_card(reviewed.id)
        assert loaded is not None
        assert loaded.state == State.LEARNING
        assert loaded.reps == 1
        assert loaded.due == reviewed.due
        assert loaded.last_review == NOW
        assert loaded.stability == pytest.approx(reviewed.stability)

    @pytest.mark.asyncio
    async def test_save_card_replaces_media(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=1)
        cards[0].media = [MediaFile(filename="a.png", data=b"a")]
        await storage.save_import(deck, cards)

        cards[0].media = [MediaFile(filename="b.png", data=b"b")]
        cards[0].tags = ["edited"]
        await storage.save_card(cards[0])

        loaded = await storage.get_card(cards[0].id)
        assert [m.filename for m in loaded.media] == ["b.png"]
        assert loaded.tags == ["edited"]

    @pytest.mark.asyncio
    async def test_delete_card(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=2)
        await storage.save_import(deck, cards)

        assert await storage.delete_card(cards[0].id) is True
        remaining = await storage.get_cards(deck.id)
        assert [c.id for c in remaining] == [cards[1].id]

    @pytest.mark.asyncio
    async def test_cards_in_creation_order(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=4)
        await storage.save_import(deck, list(reversed(cards)))
        assert [c.front for c in await storage.get_cards(deck.id)] == ["q0", "q1", "q2", "q3"]


class TestQueries:
    @pytest.mark.asyncio
    async def test_due_and_new_cards(self, storage: Storage, scheduler: FSRS) -> None:
        deck, cards = _deck_with_cards(scheduler, count=3)
        cards[1] = scheduler.review_card(cards[1], Rating.EASY, NOW)
        cards[2] = scheduler.review_card(cards[2], Rating.AGAIN, NOW)
        await storage.save_import(deck, cards)

        due = await storage.get_due_cards(deck.id, now=NOW + timedelta(minutes=5))
        assert [c.id for c in due] == [cards[0].id, cards[2].id]

        new = await storage.get_new_cards(deck.id)
        assert [c.id for c in new] == [cards[0].id]

    @pytest.mark.asyncio
    async def test_queries_are_scoped_to_deck(self, storage: Storage, scheduler: FSRS) -> None:
        first, first_cards = _deck_with_cards(scheduler, "First", 2)
        second, second_cards = _deck_with_cards(scheduler, "Second", 3)
        await storage.save_import(first, first_cards)
        await storage.save_import(second, second_cards)

        assert len(await storage.get_new_cards(first.id)) == 2
        assert len(await storage.get_due_cards(second.id, now=NOW + timedelta(hours=1))) == 3
        assert len(await storage.get_cards()) == 5


class TestIntegrity:
    @pytest.mark.asyncio
    async def test_card_for_missing_deck_rejected(self, storage: Storage, scheduler: FSRS) -> None:
        orphan = scheduler.create_card("q", "a", "no-such-deck", now=NOW)
        with pytest.raises(DeckNotFound) as exc_info:
            await storage.save_card(orphan)
        assert exc_info.value.deck_id == "no-such-deck"
        assert await storage.get_cards() == []

    @pytest.mark.asyncio
    async def test_foreign_keys_enforced_in_database(self, storage: Storage, scheduler: FSRS) -> None:
        orphan = scheduler.create_card("q", "a", "no-such-deck", now=NOW)
        with pytest.raises(IntegrityError):
            async with storage.session_factory() as db, db.begin():
                db.add(apply_card(models.Card(id=orphan.id), orphan))
        assert await storage.get_cards() == []

    @pytest.mark.asyncio
    async def test_imported_cards_keep_source_order(self, storage: Storage, scheduler: FSRS) -> None:
        rows = "".join(f"q{i},a{i}\n" for i in range(8))
        result = import_deck("cards.csv", rows.encode("utf-8"), scheduler=scheduler, now=NOW)
        await storage.save_import(result.deck, list(reversed(result.cards)))

        expected = [f"q{i}" for i in range(8)]
        assert [c.front for c in await storage.get_cards(result.deck.id)] == expected
        assert [c.front for c in await storage.get_new_cards(result.deck.id)] == expected
