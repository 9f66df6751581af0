"""FastAPI application entry point and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from backend.api.cards_router import router as cards_router
from backend.api.decks_router import router as decks_router
from backend.api.import_router import router as import_router
from backend.api.stats_router import router as stats_router
from backend.config import settings
from backend.database import async_session, engine
from backend.errors import DeckImportError, DeckNotFound, EmptyResult, InvalidGrade
from backend.storage import ensure_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize database on startup and cleanup on shutdown."""
    await ensure_db()
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Flashcard decks with FSRS review scheduling and deck import/export",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(decks_router)
app.include_router(cards_router)
app.include_router(stats_router)
app.include_router(import_router)


@app.exception_handler(InvalidGrade)
async def invalid_grade_handler(request: Request, exc: InvalidGrade) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(DeckNotFound)
async def deck_not_found_handler(request: Request, exc: DeckNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeckImportError)
async def import_error_handler(request: Request, exc: DeckImportError) -> JSONResponse:
    """Failed imports: 422 when the file was readable but held no cards, 400 otherwise."""
    status_code = 422 if isinstance(exc, EmptyResult) else 400
    logger.warning("Import failed: %s", exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Check database connectivity and return status."""
    async with async_session() as session:
        await session.execute(text("SELECT 1"))
    return {"status": "ok"}
