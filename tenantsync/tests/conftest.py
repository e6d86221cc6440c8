from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point the module-level engine at a throwaway SQLite file before any app import.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'tenantsync-tests.db'}",
)
os.environ.setdefault("WAREHOUSE_CACHE_BACKEND", "memory")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantsync.core.config import get_settings
from tenantsync.domain.models import Base
from tenantsync.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def fresh_settings() -> None:
    # Settings are cached per process; tests that monkeypatch env need a clean read.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    # One SQLite file per test keeps tenant stores isolated without cleanup code.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
