"""API route for uploading deck files."""

import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool

from backend.api.schemas import DeckResponse, ImportResponse
from backend.srs.fsrs import FSRS
from backend.storage import Storage, get_storage
from ingestion.pipeline import import_deck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/import", tags=["import"])

scheduler = FSRS.from_settings()


@router.post("", response_model=ImportResponse, status_code=201)
async def upload_deck(
    file: UploadFile = File(...),
    deck_name: str | None = Form(None),
    storage: Storage = Depends(get_storage),
) -> ImportResponse:
    """Import an .apkg, .csv, .tsv, .txt or .json file as a new deck.

    Nothing is stored unless the whole file imports successfully.
    """
    content = await file.read()
    # Parsing is blocking work, kept off the event loop
    result = await run_in_threadpool(
        import_deck, file.filename or "upload", content, deck_name=deck_name or None, scheduler=scheduler
    )
    await storage.save_import(result.deck, result.cards)
    return ImportResponse(
        deck=DeckResponse.model_validate(result.deck),
        format=result.format.value,
        imported=len(result.cards),
        skipped=result.skipped,
        warnings=[str(w) for w in result.warnings],
    )
