"""API routes for study statistics."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from backend.api.schemas import StatsResponse
from backend.config import utcnow
from backend.srs.stats import compute_stats
from backend.storage import Storage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("", response_model=StatsResponse)
async def get_stats(
    deck_id: str | None = None,
    storage: Storage = Depends(get_storage),
) -> StatsResponse:
    """Card counts across all decks, or one deck with ``?deck_id=``."""
    if deck_id is not None and await storage.get_deck(deck_id) is None:
        raise HTTPException(status_code=404, detail="Deck not found")
    cards = await storage.get_cards(deck_id)
    return StatsResponse.model_validate(compute_stats(cards, utcnow()))
