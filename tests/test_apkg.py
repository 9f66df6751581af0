"""Tests for container (.apkg) import and export."""

import io
import json
import zipfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from backend.domain import Card, Deck, MediaFile, Rating, State
from backend.errors import EmptyResult, MalformedContainer
from backend.srs.fsrs import FSRS
from ingestion.apkg import (
    build_apkg,
    convert_due,
    ease_from_difficulty,
    parse_apkg,
    pick_deck_name,
    render_card,
    render_template,
    to_record,
)
from ingestion.file_handlers import ImportFormat
from ingestion.media import embed
from ingestion.pipeline import ExportFormat, difficulty_from_ease, export_deck, import_deck
from ingestion.records import ModelRecord, NoteRecord, SourceCard, TemplateRecord

NOW = datetime(2025, 3, 10, 12, 0, 0)


def _zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def sample_deck(scheduler: FSRS) -> tuple[Deck, list[Card]]:
    deck = Deck(name="Geography", description="Capitals", created_at=NOW, updated_at=NOW)
    image = MediaFile(filename="flag.png", data=b"\x89PNG\r\n\x1a\nflag")

    fresh = scheduler.create_card(f"Whose flag? {embed(image)}", "France", deck.id, ["europe"], now=NOW)
    fresh.media = [image]

    reviewed = scheduler.create_card("Capital of Peru?", "Lima", deck.id, ["americas"], now=NOW)
    reviewed = scheduler.review_card(reviewed, Rating.GOOD, NOW)
    reviewed = scheduler.review_card(reviewed, Rating.GOOD, reviewed.due)

    learning = scheduler.create_card("Capital of Chile?", "<b>Santiago</b>", deck.id, now=NOW)
    learning = scheduler.review_card(learning, Rating.GOOD, NOW)

    return deck, [fresh, reviewed, learning]


class TestRoundTrip:
    def _round_trip(self, deck: Deck, cards: list[Card]):
        content = build_apkg(deck, cards, now=NOW)
        return import_deck("geography.apkg", content, scheduler=FSRS(), now=NOW)

    def test_archive_layout(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        with zipfile.ZipFile(io.BytesIO(build_apkg(deck, cards, now=NOW))) as zf:
            names = set(zf.namelist())
            mapping = json.loads(zf.read("media"))
            assert {"collection.anki2", "media", "0"} <= names
            assert mapping == {"0": "flag.png"}
            assert zf.read("0") == cards[0].media[0].data

    def test_collection_carries_schedule(self, tmp_path: Path, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        deck.settings.new_cards_per_day = 7
        deck.settings.max_reviews = 55
        with zipfile.ZipFile(io.BytesIO(build_apkg(deck, cards, now=NOW))) as zf:
            db_path = tmp_path / "collection.anki2"
            db_path.write_bytes(zf.read("collection.anki2"))

        engine = create_engine(f"sqlite:///{db_path}")
        with engine.connect() as conn:
            rows = conn.execute(text("SELECT type, queue, ivl, reps FROM cards ORDER BY nid")).all()
            dconf = json.loads(conn.execute(text("SELECT dconf FROM col")).scalar_one())
        engine.dispose()

        assert [tuple(row) for row in rows][0] == (0, 0, 0, 0)
        assert rows[1].type == 2 and rows[1].ivl > 0 and rows[1].reps == 2
        assert rows[2].type == 1 and rows[2].queue == 1 and rows[2].reps == 1
        assert {options["new"]["perDay"] for options in dconf.values()} == {7}
        assert {options["rev"]["perDay"] for options in dconf.values()} == {55}

    def test_deck_and_content(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        result = self._round_trip(deck, cards)

        assert result.format == ImportFormat.CONTAINER
        assert result.deck.name == "Geography"
        assert [c.front for c in result.cards] == [c.front for c in cards]
        assert [c.back for c in result.cards] == [c.back for c in cards]
        assert [c.tags for c in result.cards] == [c.tags for c in cards]

    def test_media_is_re_embedded(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        imported = self._round_trip(deck, cards).cards[0]
        assert 'data-media="flag.png"' in imported.front
        assert imported.media == cards[0].media

    def test_new_card_starts_fresh(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        imported = self._round_trip(deck, cards).cards[0]
        assert imported.state == State.NEW
        assert imported.reps == 0
        assert imported.lapses == 0
        assert imported.last_review is None
        assert imported.due == NOW

    def test_review_history_preserved(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        source = cards[1]
        imported = self._round_trip(deck, cards).cards[1]

        assert imported.state == State.REVIEW
        assert imported.reps == source.reps
        assert imported.lapses == source.lapses
        assert imported.scheduled_days == round(source.scheduled_days)
        assert imported.stability == imported.scheduled_days
        assert imported.due.date() == source.due.date()
        assert imported.last_review is not None
        assert imported.last_review <= NOW
        assert imported.difficulty == pytest.approx(source.difficulty, abs=0.01)

    def test_learning_card_keeps_exact_due(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        source = cards[2]
        imported = self._round_trip(deck, cards).cards[2]

        assert imported.state == State.LEARNING
        assert imported.due == source.due
        assert imported.reps == 1

    def test_counts(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        result = self._round_trip(deck, cards)
        assert result.deck.card_count == 3
        assert result.deck.new_card_count == 1
        assert result.deck.due_card_count == 1

    def test_export_deck_dispatch(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        content = export_deck(deck, cards, ExportFormat.CONTAINER, now=NOW)
        assert content.startswith(b"PK\x03\x04")

    def test_lapses_preserved(self, scheduler: FSRS, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        lapsed = scheduler.review_card(cards[1], Rating.AGAIN, cards[1].due)
        relearned = scheduler.review_card(lapsed, Rating.GOOD, lapsed.due)
        imported = self._round_trip(deck, [relearned]).cards[0]
        assert imported.lapses == 1
        assert imported.reps == 4


class TestMalformedContainer:
    def test_not_a_zip(self) -> None:
        with pytest.raises(MalformedContainer, match="Notes in Plain Text"):
            import_deck("deck.apkg", b"this is not a zip file", now=NOW)

    def test_missing_collection(self) -> None:
        content = _zip({"media": b"{}"})
        with pytest.raises(MalformedContainer, match="does not contain a collection"):
            parse_apkg(content, "deck.apkg", now=NOW)

    def test_garbage_database(self) -> None:
        content = _zip({"collection.anki2": b"definitely not sqlite" * 100, "media": b"{}"})
        with pytest.raises(MalformedContainer) as exc_info:
            parse_apkg(content, "deck.apkg", now=NOW)
        assert "Plain Text" in str(exc_info.value)

    def test_missing_metadata_row(self, tmp_path: Path, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        with zipfile.ZipFile(io.BytesIO(build_apkg(deck, cards[1:], now=NOW))) as zf:
            db_path = tmp_path / "collection.anki2"
            db_path.write_bytes(zf.read("collection.anki2"))
        engine = create_engine(f"sqlite:///{db_path}")
        with engine.begin() as conn:
            conn.execute(text("DELETE FROM col"))
        engine.dispose()

        content = _zip({"collection.anki2": db_path.read_bytes()})
        with pytest.raises(MalformedContainer, match="no metadata row"):
            parse_apkg(content, "deck.apkg", now=NOW)

    def test_bad_media_mapping_is_tolerated(self, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        with zipfile.ZipFile(io.BytesIO(build_apkg(deck, cards[1:], now=NOW))) as zf:
            collection = zf.read("collection.anki2")
        content = _zip({"collection.anki2": collection, "media": b"not json"})

        parsed = parse_apkg(content, "deck.apkg", now=NOW)
        assert len(parsed.records) == 2
        assert parsed.media is not None
        assert len(parsed.media) == 0


class TestTemplates:
    def test_field_substitution_is_case_insensitive(self) -> None:
        assert render_template("Q: {{front}}", {"Front": "What?"}) == "Q: What?"

    def test_unknown_field_and_residue_removed(self) -> None:
        assert render_template("a{{Missing}}b{{#Open}}c", {}) == "abc"

    def test_conditional_sections(self) -> None:
        template = "{{Front}}{{#Hint}} ({{Hint}}){{/Hint}}{{^Hint}} (no hint){{/Hint}}"
        assert render_template(template, {"Front": "Q", "Hint": "h"}) == "Q (h)"
        assert render_template(template, {"Front": "Q", "Hint": ""}) == "Q (no hint)"
        assert render_template(template, {"Front": "Q", "Hint": "<br>"}) == "Q (no hint)"

    def test_filters(self) -> None:
        assert render_template("{{text:Front}}", {"Front": "<b>bold</b>"}) == "bold"
        assert render_template("{{type:Back}}", {"Back": "answer"}) == ""

    def test_front_side_renders_empty(self) -> None:
        assert render_template("{{FrontSide}}<br>{{Back}}", {"Back": "A"}) == "<br>A"

    def test_cloze(self) -> None:
        fields = {"Text": "{{c1::Paris}} is in {{c2::France::country}}"}
        assert render_template("{{cloze:Text}}", fields, 1) == "[...] is in France"
        assert render_template("{{cloze:Text}}", fields, 1, answer_side=True) == "<b>Paris</b> is in France"
        assert render_template("{{cloze:Text}}", fields, 2) == "Paris is in [country]"

    def test_render_basic_card_drops_answer_divider(self) -> None:
        model = ModelRecord(
            id=1,
            name="Basic",
            field_names=["Front", "Back"],
            templates=[TemplateRecord("Card 1", 0, "{{Front}}", "{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}")],
        )
        note = NoteRecord(id=1, model_id=1, fields=["Q", "A"])
        front, back = render_card(model, note, 0)
        assert front == "Q"
        assert back.strip() == "A"

    def test_render_cloze_card(self) -> None:
        model = ModelRecord(
            id=2,
            name="Cloze",
            field_names=["Text", "Extra"],
            templates=[TemplateRecord("Cloze", 0, "{{cloze:Text}}", "{{cloze:Text}}<br>{{Extra}}")],
            is_cloze=True,
        )
        note = NoteRecord(id=1, model_id=2, fields=["{{c1::A}} and {{c2::B}}", "extra"])
        front, back = render_card(model, note, 1)
        assert front == "A and [...]"
        assert back == "A and <b>B</b><br>extra"

    def test_model_without_templates(self) -> None:
        model = ModelRecord(id=3, name="Empty", field_names=["Front"], templates=[])
        assert render_card(model, NoteRecord(id=1, model_id=3, fields=["Q"]), 0) is None


class TestSourceScheduling:
    def test_pick_deck_name(self) -> None:
        decks = {"1": {"id": 1, "name": "Default"}, "5": {"id": 5, "name": "Spanish"}}
        assert pick_deck_name(decks, {5}) == "Spanish"
        assert pick_deck_name(decks, {1}) == "Spanish"
        assert pick_deck_name({"1": {"id": 1, "name": "Default"}}, {1}) is None

    def test_day_number_due_is_reanchored(self) -> None:
        created = int((NOW - timedelta(days=5)).replace(tzinfo=UTC).timestamp())
        source = SourceCard(id=1, note_id=1, deck_id=1, ord=0, type=2, due=10, interval=7)
        assert convert_due(source, created, NOW) == NOW + timedelta(days=5)

    def test_overdue_review_card(self) -> None:
        created = int((NOW - timedelta(days=30)).replace(tzinfo=UTC).timestamp())
        source = SourceCard(id=1, note_id=1, deck_id=1, ord=0, type=2, due=20, interval=7)
        assert convert_due(source, created, NOW) == NOW - timedelta(days=10)

    def test_epoch_due(self) -> None:
        due = NOW + timedelta(minutes=10)
        source = SourceCard(
            id=1, note_id=1, deck_id=1, ord=0, type=1, due=int(due.replace(tzinfo=UTC).timestamp()), interval=-600
        )
        assert convert_due(source, 0, NOW) == due

    def test_unreviewed_source_has_no_history(self) -> None:
        source = SourceCard(id=1, note_id=1, deck_id=1, ord=0, type=0, due=3)
        record = to_record(source, "Q", "A", [], 0, NOW)
        assert record.reps is None
        assert record.state is None

    def test_reviewed_source_history(self) -> None:
        source = SourceCard(id=1, note_id=1, deck_id=1, ord=0, type=2, due=0, interval=12, factor=2500, reps=6, lapses=1)
        record = to_record(source, "Q", "A", ["t"], 0, NOW)
        assert (record.reps, record.lapses, record.state) == (6, 1, State.REVIEW)
        assert record.interval_days == 12
        assert record.ease_factor == 2.5

    def test_learning_interval_in_seconds(self) -> None:
        source = SourceCard(id=1, note_id=1, deck_id=1, ord=0, type=1, due=0, interval=-600, reps=1)
        record = to_record(source, "Q", "A", [], 0, NOW)
        assert record.interval_days == pytest.approx(600 / 86400)


class TestEaseMapping:
    @pytest.mark.parametrize("difficulty", [1.0, 3.5, 5.0, 7.25, 10.0])
    def test_ease_and_difficulty_are_inverse(self, difficulty: float) -> None:
        ease = ease_from_difficulty(difficulty) / 1000
        assert difficulty_from_ease(ease) == pytest.approx(difficulty, abs=0.01)

    def test_default_ease_is_mid_difficulty(self) -> None:
        assert difficulty_from_ease(2.5) == 5.0
        assert difficulty_from_ease(None) is None
        assert difficulty_from_ease(1.3) == pytest.approx(10.0)



class TestEmptyDeck:
    def test_empty_container_is_rejected(self) -> None:
        content = build_apkg(Deck(name="Nothing"), [], now=NOW)
        with pytest.raises(EmptyResult):
            import_deck("nothing.apkg", content, now=NOW)
    def test_cards_without_notes_are_skipped(self, tmp_path: Path, sample_deck: tuple[Deck, list[Card]]) -> None:
        deck, cards = sample_deck
        with zipfile.ZipFile(io.BytesIO(build_apkg(deck, cards[1:], now=NOW))) as zf:
            db_path = tmp_path / "collection.anki2"
            db_path.write_bytes(zf.read("collection.anki2"))

        engine = create_engine(f"sqlite:///{db_path}")
        with engine.begin() as conn:
            conn.execute(text("DELETE FROM notes WHERE id = (SELECT MIN(id) FROM notes)"))
        engine.dispose()

        parsed = parse_apkg(_zip({"collection.anki2": db_path.read_bytes()}), now=NOW)
        assert [r.front for r in parsed.records] == [cards[2].front]
