"""API routes for decks, their cards, study queues and exports."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.concurrency import run_in_threadpool

from backend.api.schemas import (
    CardCreate,
    CardResponse,
    DeckCreate,
    DeckResponse,
    DeckUpdate,
    QueueResponse,
)
from backend.config import utcnow
from backend.domain import Deck, DeckSettings
from backend.srs.fsrs import FSRS
from backend.srs.queue import build_queue
from backend.storage import Storage, get_storage
from ingestion.pipeline import ExportFormat, export_deck, export_filename

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/decks", tags=["decks"])

scheduler = FSRS.from_settings()


async def _require_deck(storage: Storage, deck_id: str) -> Deck:
    deck = await storage.get_deck(deck_id)
    if deck is None:
        raise HTTPException(status_code=404, detail="Deck not found")
    return deck


@router.get("", response_model=list[DeckResponse])
async def list_decks(storage: Storage = Depends(get_storage)) -> list[DeckResponse]:
    decks = await storage.get_decks()
    return [DeckResponse.model_validate(deck) for deck in decks]


@router.post("", response_model=DeckResponse, status_code=201)
async def create_deck(request: DeckCreate, storage: Storage = Depends(get_storage)) -> DeckResponse:
    deck = Deck(name=request.name, description=request.description)
    if request.settings is not None:
        deck.settings = DeckSettings(**request.settings.model_dump())
    await storage.save_deck(deck)
    logger.info("Created deck %s (%s)", deck.id, deck.name)
    return DeckResponse.model_validate(deck)


@router.get("/{deck_id}", response_model=DeckResponse)
async def get_deck(deck_id: str, storage: Storage = Depends(get_storage)) -> DeckResponse:
    return DeckResponse.model_validate(await _require_deck(storage, deck_id))


@router.put("/{deck_id}", response_model=DeckResponse)
async def update_deck(
    deck_id: str,
    request: DeckUpdate,
    storage: Storage = Depends(get_storage),
) -> DeckResponse:
    deck = await _require_deck(storage, deck_id)
    if request.name is not None:
        deck.name = request.name
    if request.description is not None:
        deck.description = request.description
    if request.settings is not None:
        deck.settings = DeckSettings(**request.settings.model_dump())
    deck.updated_at = utcnow()
    await storage.save_deck(deck)
    return DeckResponse.model_validate(deck)


@router.delete("/{deck_id}", status_code=204)
async def delete_deck(deck_id: str, storage: Storage = Depends(get_storage)) -> Response:
    if not await storage.delete_deck(deck_id):
        raise HTTPException(status_code=404, detail="Deck not found")
    return Response(status_code=204)


@router.get("/{deck_id}/cards", response_model=list[CardResponse])
async def list_cards(deck_id: str, storage: Storage = Depends(get_storage)) -> list[CardResponse]:
    await _require_deck(storage, deck_id)
    return [CardResponse.model_validate(card) for card in await storage.get_cards(deck_id)]


@router.post("/{deck_id}/cards", response_model=CardResponse, status_code=201)
async def create_card(
    deck_id: str,
    request: CardCreate,
    storage: Storage = Depends(get_storage),
) -> CardResponse:
    await _require_deck(storage, deck_id)
    card = scheduler.create_card(request.front, request.back, deck_id, request.tags)
    await storage.save_card(card)
    return CardResponse.model_validate(card)


@router.get("/{deck_id}/queue", response_model=QueueResponse)
async def get_queue(deck_id: str, storage: Storage = Depends(get_storage)) -> QueueResponse:
    """Cards to study now, limited by the deck's daily settings."""
    deck = await _require_deck(storage, deck_id)
    queue = build_queue(await storage.get_cards(deck_id), deck.settings, utcnow())
    return QueueResponse(
        deck_id=deck_id,
        due_count=len(queue.due_cards),
        new_count=len(queue.new_cards),
        total=queue.total,
        cards=[CardResponse.model_validate(card) for card in queue.interleaved()],
    )


@router.get("/{deck_id}/export")
async def export(
    deck_id: str,
    fmt: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    storage: Storage = Depends(get_storage),
) -> Response:
    deck = await _require_deck(storage, deck_id)
    cards = await storage.get_cards(deck_id)
    content = await run_in_threadpool(export_deck, deck, cards, fmt)
    return Response(
        content=content,
        media_type=fmt.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(deck, fmt)}"'},
    )
