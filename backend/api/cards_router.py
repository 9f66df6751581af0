"""API routes for single cards and reviews."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from backend.api.schemas import (
    CardResponse,
    CardUpdate,
    ReviewOptionResponse,
    ReviewOptionsResponse,
    ReviewRequest,
)
from backend.config import utcnow
from backend.domain import Card
from backend.srs.fsrs import FSRS
from backend.storage import Storage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cards", tags=["cards"])

scheduler = FSRS.from_settings()


async def _require_card(storage: Storage, card_id: str) -> Card:
    card = await storage.get_card(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail="Card not found")
    return card


@router.get("/{card_id}", response_model=CardResponse)
async def get_card(card_id: str, storage: Storage = Depends(get_storage)) -> CardResponse:
    return CardResponse.model_validate(await _require_card(storage, card_id))


@router.put("/{card_id}", response_model=CardResponse)
async def update_card(
    card_id: str,
    request: CardUpdate,
    storage: Storage = Depends(get_storage),
) -> CardResponse:
    card = await _require_card(storage, card_id)
    if request.front is not None:
        card.front = request.front
    if request.back is not None:
        card.back = request.back
    if request.tags is not None:
        card.tags = list(dict.fromkeys(t.strip() for t in request.tags if t.strip()))
    card.updated_at = utcnow()
    await storage.save_card(card)
    return CardResponse.model_validate(card)


@router.delete("/{card_id}", status_code=204)
async def delete_card(card_id: str, storage: Storage = Depends(get_storage)) -> Response:
    if not await storage.delete_card(card_id):
        raise HTTPException(status_code=404, detail="Card not found")
    return Response(status_code=204)


@router.get("/{card_id}/options", response_model=ReviewOptionsResponse)
async def get_review_options(card_id: str, storage: Storage = Depends(get_storage)) -> ReviewOptionsResponse:
    """Projected interval and due time for each grade."""
    card = await _require_card(storage, card_id)
    now = utcnow()
    options = scheduler.next_review_options(card, now)

    def option(name: str) -> ReviewOptionResponse:
        projected = getattr(options, name)
        return ReviewOptionResponse(interval=projected.interval, due=projected.due, state=int(projected.card.state))

    return ReviewOptionsResponse(
        card_id=card.id,
        retention=scheduler.calculate_retention(card, now),
        again=option("again"),
        hard=option("hard"),
        good=option("good"),
        easy=option("easy"),
    )


@router.post("/{card_id}/review", response_model=CardResponse)
async def review_card(
    card_id: str,
    request: ReviewRequest,
    storage: Storage = Depends(get_storage),
) -> CardResponse:
    """Grade a card and store its new schedule."""
    card = await _require_card(storage, card_id)
    updated = scheduler.review_card(card, request.grade, utcnow())
    await storage.save_card(updated)
    logger.info("Card %s reviewed with grade %d, next due %s", card_id, request.grade, updated.due)
    return CardResponse.model_validate(updated)
