"""Container (.apkg) import and export.

An .apkg file is a zip archive holding:
- ``collection.anki2`` (or ``collection.anki21``): a SQLite database with the
  ``col`` metadata row (JSON models and decks), ``notes`` and ``cards``
- ``media``: a JSON object mapping numbered archive members to filenames

Cards are rendered by substituting note fields into their model's templates.
Scheduling counters are carried over only for cards the source has reviewed.

Export builds the package with genanki, which writes every card as new, then
rewrites the scheduling columns of the written collection.
"""

import io
import json
import logging
import re
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path, PurePath

import genanki
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from backend.config import utcnow
from backend.domain import Card, Deck, State
from backend.errors import MalformedContainer
from ingestion.constants import COLLECTION_MEMBERS, FIELD_SEPARATOR
from ingestion.media import MediaExtractor, restore_references
from ingestion.normalizer import strip_html
from ingestion.records import ModelRecord, NoteRecord, ParsedDeck, ParsedRecord, SourceCard, TemplateRecord
from ingestion.utils import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)

DEFAULT_DECK_NAME = "Default"
SECONDS_PER_DAY = 86400
# Source due values above this are epoch seconds (learning cards), below it day numbers
EPOCH_DUE_THRESHOLD = 1_000_000_000
MODEL_TYPE_CLOZE = 1

_CONDITIONAL = re.compile(r"\{\{([#^])\s*([^}]+?)\s*\}\}(.*?)\{\{/\s*\2\s*\}\}", re.DOTALL)
_FIELD_REF = re.compile(r"\{\{(?![#^/])([^{}]+?)\}\}")
_RESIDUE = re.compile(r"\{\{[^}]*\}\}")
_CLOZE = re.compile(r"\{\{c(\d+)::(.*?)(?:::(.*?))?\}\}", re.DOTALL)
_ANSWER_DIVIDER = re.compile(r"^\s*<hr\s+id\s*=\s*[\"']?answer[\"']?\s*/?>", re.IGNORECASE)
MAX_CONDITIONAL_PASSES = 5


# --- Template rendering ---


def render_cloze(value: str, number: int, answer_side: bool) -> str:
    """Hide (front) or highlight (back) cloze ``number``; other deletions show their text."""

    def replace(match: re.Match) -> str:
        if int(match.group(1)) != number:
            return match.group(2)
        if answer_side:
            return f"<b>{match.group(2)}</b>"
        return f"[{match.group(3)}]" if match.group(3) else "[...]"

    return _CLOZE.sub(replace, value)


def render_template(
    template: str,
    fields: dict[str, str],
    cloze_number: int = 0,
    answer_side: bool = False,
) -> str:
    """Substitute ``{{Field}}`` references with note values.

    Supports ``{{#F}}..{{/F}}`` and ``{{^F}}..{{/F}}`` sections and the
    ``text:`` and ``cloze:`` filters. Unknown fields render empty and any
    leftover ``{{...}}`` is removed. ``{{FrontSide}}`` renders empty.
    """
    lowered = {name.lower(): value for name, value in fields.items()}

    def lookup(name: str) -> str:
        name = name.strip()
        if name in fields:
            return fields[name]
        return lowered.get(name.lower(), "")

    def section(match: re.Match) -> str:
        present = bool(strip_html(lookup(match.group(2))))
        keep = present if match.group(1) == "#" else not present
        return match.group(3) if keep else ""

    for _ in range(MAX_CONDITIONAL_PASSES):
        rendered = _CONDITIONAL.sub(section, template)
        if rendered == template:
            break
        template = rendered

    def field_ref(match: re.Match) -> str:
        *filters, name = match.group(1).split(":")
        filters = [f.strip().lower() for f in filters]
        if name.strip() == "FrontSide" or "type" in filters:
            return ""
        value = lookup(name)
        if "cloze" in filters:
            value = render_cloze(value, cloze_number, answer_side)
        if "text" in filters:
            value = strip_html(value)
        return value

    rendered = _FIELD_REF.sub(field_ref, template)
    return _RESIDUE.sub("", rendered)


def render_card(model: ModelRecord, note: NoteRecord, ord_: int) -> tuple[str, str] | None:
    template = model.template_for(ord_)
    if template is None:
        return None
    values = dict(zip(model.field_names, note.fields, strict=False))
    cloze_number = ord_ + 1 if model.is_cloze else 0
    front = render_template(template.front, values, cloze_number, answer_side=False)
    back = render_template(template.back, values, cloze_number, answer_side=True)
    return front, _ANSWER_DIVIDER.sub("", back, count=1)


# --- Reading ---


def parse_models(raw: str) -> dict[int, ModelRecord]:
    models = {}
    for key, data in json.loads(raw or "{}").items():
        field_names = [f["name"] for f in sorted(data.get("flds", []), key=lambda f: f.get("ord", 0))]
        templates = [
            TemplateRecord(name=t.get("name", ""), ord=t.get("ord", i), front=t.get("qfmt", ""), back=t.get("afmt", ""))
            for i, t in enumerate(data.get("tmpls", []))
        ]
        model_id = int(data.get("id", key))
        models[model_id] = ModelRecord(
            id=model_id,
            name=data.get("name", ""),
            field_names=field_names,
            templates=templates,
            is_cloze=data.get("type") == MODEL_TYPE_CLOZE,
        )
    return models


def pick_deck_name(decks: dict, used_ids: set[int]) -> str | None:
    """The first non-default deck that cards belong to, else any non-default deck."""
    named = {int(data.get("id", key)): data.get("name", "") for key, data in decks.items()}
    for deck_id in sorted(used_ids):
        name = named.get(deck_id)
        if name and name != DEFAULT_DECK_NAME:
            return name
    for name in named.values():
        if name and name != DEFAULT_DECK_NAME:
            return name
    return None


def convert_due(source: SourceCard, created: int, now: datetime) -> datetime:
    """Turn a source due value into an absolute instant.

    Learning cards store epoch seconds; review cards store a day number counted
    from the collection creation day, which is re-anchored to import time.
    """
    if source.due > EPOCH_DUE_THRESHOLD:
        return datetime.fromtimestamp(source.due, UTC).replace(tzinfo=None)
    anchor = datetime.fromtimestamp(created, UTC).replace(tzinfo=None) if created else now
    today = max(0, (now - anchor).days)
    return now + timedelta(days=source.due - today)


def source_state(source: SourceCard) -> State:
    if source.type in (State.LEARNING, State.REVIEW, State.RELEARNING):
        return State(source.type)
    return State.REVIEW


def to_record(source: SourceCard, front: str, back: str, tags: list[str], created: int, now: datetime) -> ParsedRecord:
    record = ParsedRecord(front=front, back=back, tags=tags)
    if not source.has_been_reviewed:
        return record
    record.reps = source.reps
    record.lapses = source.lapses
    record.state = source_state(source)
    record.due = convert_due(source, created, now)
    record.interval_days = source.interval if source.interval > 0 else -source.interval / SECONDS_PER_DAY
    record.ease_factor = source.factor / 1000 if source.factor else None
    return record


def _read_collection(path: Path) -> tuple[int, dict[int, ModelRecord], dict, list[NoteRecord], list[SourceCard]]:
    engine = create_engine(f"sqlite:///{path}")
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT crt, models, decks FROM col LIMIT 1")).first()
            if row is None:
                raise MalformedContainer("The collection has no metadata row")
            notes = [
                NoteRecord(id=r.id, model_id=r.mid, fields=r.flds.split(FIELD_SEPARATOR), tags=r.tags or "")
                for r in conn.execute(text("SELECT id, mid, flds, tags FROM notes"))
            ]
            cards = [
                SourceCard(
                    id=r.id,
                    note_id=r.nid,
                    deck_id=r.did,
                    ord=r.ord,
                    type=r.type,
                    queue=r.queue,
                    due=r.due,
                    interval=r.ivl,
                    factor=r.factor,
                    reps=r.reps,
                    lapses=r.lapses,
                )
                for r in conn.execute(
                    text("SELECT id, nid, did, ord, type, queue, due, ivl, factor, reps, lapses FROM cards ORDER BY nid, ord")
                )
            ]
    except SQLAlchemyError as e:
        raise MalformedContainer(f"Could not read the collection database ({e.__class__.__name__})") from e
    finally:
        engine.dispose()

    try:
        models = parse_models(row.models)
        decks = json.loads(row.decks or "{}")
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise MalformedContainer(f"Collection metadata is not valid JSON ({e})") from e
    return row.crt or 0, models, decks, notes, cards


def parse_apkg(
    content: bytes,
    filename: str = "",
    progress: ProgressCallback | None = None,
    now: datetime | None = None,
) -> ParsedDeck:
    """Read a container archive into records.

    Raises:
        MalformedContainer: The archive or its collection database cannot be read.
    """
    now = now or utcnow()
    report = ProgressReporter(progress)
    report(5)

    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise MalformedContainer(f"{filename or 'File'} is not a valid zip archive") from e

    with archive, tempfile.TemporaryDirectory() as tmp:
        report(15)
        member = next((m for m in COLLECTION_MEMBERS if m in archive.namelist()), None)
        if member is None:
            raise MalformedContainer("The archive does not contain a collection database")
        try:
            media = MediaExtractor.from_archive(archive)
            report(25)
            db_path = Path(tmp) / member
            db_path.write_bytes(archive.read(member))
        except zipfile.BadZipFile as e:
            raise MalformedContainer(f"The archive is corrupt ({e})") from e
        report(35)

        created, models, decks, notes, source_cards = _read_collection(db_path)
    report(60)

    notes_by_id = {note.id: note for note in notes}
    result = ParsedDeck(
        deck_name=pick_deck_name(decks, {c.deck_id for c in source_cards}),
        media=media,
    )
    skipped = 0
    for source in source_cards:
        note = notes_by_id.get(source.note_id)
        model = models.get(note.model_id) if note else None
        rendered = render_card(model, note, source.ord) if model else None
        if rendered is None:
            skipped += 1
            continue
        front, back = rendered
        result.records.append(to_record(source, front, back, note.tag_list, created, now))
    report(80)

    if skipped:
        logger.warning("Skipped %d cards without a note, model or template", skipped)
    logger.info(
        "Parsed %d cards from %d notes in %s (%d media files)",
        len(result.records),
        len(notes),
        filename or "container",
        len(media),
    )
    report(100)
    return result


# --- Writing ---

BASIC_MODEL_ID = 1700000000001
EXPORT_DECK_ID = 1700000000002
MODEL_CSS = ".card {\n font-family: arial;\n font-size: 20px;\n text-align: center;\n}\n"

EXPORT_MODEL = genanki.Model(
    BASIC_MODEL_ID,
    "Basic",
    fields=[{"name": "Front"}, {"name": "Back"}],
    templates=[
        {
            "name": "Card 1",
            "qfmt": "{{Front}}",
            "afmt": "{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}",
        }
    ],
    css=MODEL_CSS,
)


@dataclass
class ContainerRow:
    """Source-format scheduling columns for one exported card."""

    type: int
    queue: int
    due: int
    interval: int
    factor: int


def ease_from_difficulty(difficulty: float) -> int:
    """Map difficulty 1-10 onto an ease factor in permille (1300-3700)."""
    ease = 2.5 + (5 - difficulty) * 1.2 / 5
    return int(round(min(3.7, max(1.3, ease)) * 1000))


def container_row(card: Card, position: int, created: datetime) -> ContainerRow:
    if card.state == State.NEW:
        return ContainerRow(type=0, queue=0, due=position, interval=0, factor=0)
    factor = ease_from_difficulty(card.difficulty)
    if card.state == State.REVIEW:
        return ContainerRow(
            type=2,
            queue=2,
            due=max(0, (card.due - created).days),
            interval=max(1, round(card.scheduled_days)),
            factor=factor,
        )
    due_seconds = int(card.due.replace(tzinfo=UTC).timestamp())
    return ContainerRow(
        type=int(card.state),
        queue=1,
        due=due_seconds,
        interval=-max(1, round(card.scheduled_days * SECONDS_PER_DAY)),
        factor=factor,
    )


def build_package(deck: Deck, cards: list[Card], media_dir: Path) -> genanki.Package:
    """Notes, deck and media files as a genanki package (all cards start out new)."""
    package_deck = genanki.Deck(EXPORT_DECK_ID, deck.name, description=deck.description or "")
    media: dict[str, Path] = {}
    for card in cards:
        for item in card.media:
            name = PurePath(item.filename).name
            if name and name not in media:
                media[name] = media_dir / name
                media[name].write_bytes(item.data)
        package_deck.add_note(
            genanki.Note(
                model=EXPORT_MODEL,
                fields=[restore_references(card.front), restore_references(card.back)],
                tags=[tag.replace(" ", "_") for tag in card.tags],
                guid=card.id,
            )
        )
    return genanki.Package(package_deck, media_files=[str(path) for path in media.values()])


def write_schedule(db_path: Path, deck: Deck, cards: list[Card], day_start: datetime) -> None:
    """Carry card scheduling and deck limits into a collection genanki wrote as all-new."""
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.begin() as conn:
            dconf = json.loads(conn.execute(text("SELECT dconf FROM col")).scalar_one())
            for options in dconf.values():
                options.setdefault("new", {})["perDay"] = deck.settings.new_cards_per_day
                options.setdefault("rev", {})["perDay"] = deck.settings.max_reviews
            conn.execute(
                text("UPDATE col SET crt = :crt, dconf = :dconf"),
                {"crt": int(day_start.replace(tzinfo=UTC).timestamp()), "dconf": json.dumps(dconf)},
            )
            rows = []
            for position, card in enumerate(cards):
                row = container_row(card, position, day_start)
                rows.append(
                    {
                        "guid": card.id,
                        "type": row.type,
                        "queue": row.queue,
                        "due": row.due,
                        "ivl": row.interval,
                        "factor": row.factor,
                        "reps": card.reps,
                        "lapses": card.lapses,
                    }
                )
            if rows:
                conn.execute(
                    text(
                        "UPDATE cards SET type = :type, queue = :queue, due = :due, ivl = :ivl, "
                        "factor = :factor, reps = :reps, lapses = :lapses "
                        "WHERE nid = (SELECT id FROM notes WHERE guid = :guid)"
                    ),
                    rows,
                )
    finally:
        engine.dispose()


def build_apkg(deck: Deck, cards: list[Card], now: datetime | None = None) -> bytes:
    """Write a deck and its cards as a container archive.

    Embedded media is written back out as archive members and the card content
    refers to it by filename again.
    """
    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    with tempfile.TemporaryDirectory() as tmp:
        workdir = Path(tmp)
        media_dir = workdir / "media"
        media_dir.mkdir()
        package = build_package(deck, cards, media_dir)
        package_path = workdir / "deck.apkg"
        package.write_to_file(str(package_path))

        collection_member = COLLECTION_MEMBERS[1]
        db_path = workdir / collection_member
        buffer = io.BytesIO()
        with zipfile.ZipFile(package_path) as source, zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as target:
            db_path.write_bytes(source.read(collection_member))
            write_schedule(db_path, deck, cards, day_start)
            target.writestr(collection_member, db_path.read_bytes())
            for member in source.namelist():
                if member != collection_member:
                    target.writestr(member, source.read(member))

    logger.info("Exported %d cards and %d media files from deck %s", len(cards), len(package.media_files), deck.name)
    return buffer.getvalue()
