from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tabula.core.config import Settings, get_settings


# Pool counters reported by the health probe, keyed by the name they are reported under.
_POOL_COUNTERS = {
    "size": "size",
    "checked_out": "checkedout",
    "checked_in": "checkedin",
    "overflow": "overflow",
}


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine keyword arguments for the configured database.

    SQLite (tests, local runs) keeps SQLAlchemy's default pool. Postgres gets a
    bounded asyncpg pool and an optional per-statement timeout so slow cell
    scans cannot pin connections indefinitely.
    """
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, int(settings.api_db_pool_size)),
        max_overflow=max(0, int(settings.api_db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    timeout_ms = int(settings.api_db_statement_timeout_ms)
    if timeout_ms > 0:
        options["connect_args"] = {"server_settings": {"statement_timeout": str(timeout_ms)}}
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **engine_options(_settings))
# Rows and grants are read after commit when building responses.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for reported, attribute in _POOL_COUNTERS.items():
        counter = getattr(pool, attribute, None)
        stats[reported] = int(counter()) if callable(counter) else None
    return stats
