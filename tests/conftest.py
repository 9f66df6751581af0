"""Shared fixtures. The database URL must be set before any backend import."""

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime
from pathlib import Path

os.environ.setdefault(
    "FLASHDECK_DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.mkdtemp(prefix='flashdeck-tests-')) / 'flashdeck.db'}",
)

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from backend.database import enable_foreign_keys, engine  # noqa: E402
from backend.models import Base  # noqa: E402
from backend.srs.fsrs import FSRS, SchedulerParameters  # noqa: E402
from backend.storage import Storage  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def scheduler() -> FSRS:
    return FSRS()


@pytest.fixture
def exact_scheduler() -> FSRS:
    """Scheduler without interval fuzz, for exact interval assertions."""
    return FSRS(SchedulerParameters(enable_fuzz=False))


@pytest.fixture
async def storage(tmp_path: Path) -> AsyncGenerator[Storage, None]:
    """Storage over a fresh database file per test."""
    test_engine = enable_foreign_keys(create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield Storage(async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False))
    await test_engine.dispose()


@pytest.fixture
async def global_engine() -> AsyncGenerator[None, None]:
    """Release pooled connections of the application engine after each test's event loop."""
    yield
    await engine.dispose()
