from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any tabula module reads settings.
_DB_DIR = tempfile.mkdtemp(prefix="tabula-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/tabula.db")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("FILTER_CACHE_BACKEND", "memory")

import pytest

from tabula.core.config import get_settings
from tabula.domain.models import Base
from tabula.persistence.db import SessionLocal, engine
from tabula.services.plan_limits import reset_plan_limits_cache


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    reset_plan_limits_cache()
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    reset_plan_limits_cache()


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session
