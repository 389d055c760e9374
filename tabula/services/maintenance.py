from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from tabula.core.config import get_settings
from tabula.persistence.db import SessionLocal
from tabula.services.filter_cache import FilterCache
from tabula.services.permissions import sweep_expired_grants


logger = logging.getLogger(__name__)

MAINTENANCE_LOCK_KEY = "tabula:maintenance:lock"


class IdleBucketCleaner(Protocol):
    # Minimal rate limiter shape needed for idle bucket cleanup.
    async def cleanup_idle_buckets(self) -> int: ...


@dataclass(slots=True)
class MaintenanceLock:
    token: str
    redis: Redis | None


_local_lock = asyncio.Lock()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow maintenance to start before migrations by treating missing tables as a temporary state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def acquire_maintenance_lock(redis: Redis | None) -> MaintenanceLock | None:
    # Only one instance sweeps per interval when a shared Redis is available.
    token = uuid4().hex
    if redis is not None:
        ttl_s = max(5, int(get_settings().maintenance_lock_ttl_s))
        acquired = await redis.set(MAINTENANCE_LOCK_KEY, token, nx=True, ex=ttl_s)
        return MaintenanceLock(token=token, redis=redis) if acquired else None
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    return MaintenanceLock(token=token, redis=None)


async def release_maintenance_lock(lock: MaintenanceLock) -> None:
    # Release only if this process still owns the token.
    if lock.redis is None:
        if _local_lock.locked():
            _local_lock.release()
        return
    current = await lock.redis.get(MAINTENANCE_LOCK_KEY)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(MAINTENANCE_LOCK_KEY)


async def run_maintenance_cycle(
    *,
    cache: FilterCache | None = None,
    rate_limiter: IdleBucketCleaner | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Run one maintenance pass: permission sweep, cache eviction, idle bucket cleanup."""
    lock = await acquire_maintenance_lock(redis)
    if lock is None:
        return {"status": "skipped_lock"}
    try:
        try:
            async with SessionLocal() as session:
                swept = await sweep_expired_grants(session, now=now or _utc_now())
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations"}
            raise
        evicted = await cache.evict_expired() if cache is not None else 0
        idle_buckets = await rate_limiter.cleanup_idle_buckets() if rate_limiter is not None else 0
    finally:
        await release_maintenance_lock(lock)
    return {
        "status": "ok",
        "swept": swept,
        "cache_evicted": evicted,
        "idle_buckets_removed": idle_buckets,
    }


class MaintenanceScheduler:
    """Fixed-interval maintenance task with an explicit lifecycle.

    Nothing runs until ``start()``; tests drive single passes through ``run_once()``.
    """

    def __init__(
        self,
        *,
        cache: FilterCache | None = None,
        rate_limiter: IdleBucketCleaner | None = None,
        redis: Redis | None = None,
        interval_s: float | None = None,
    ) -> None:
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._redis = redis
        self._interval_s = max(1.0, float(interval_s or get_settings().maintenance_interval_s))
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        return await run_maintenance_cycle(
            cache=self._cache,
            rate_limiter=self._rate_limiter,
            redis=self._redis,
            now=now,
        )

    async def _loop(self) -> None:
        # Keep the loop alive through failures while surfacing them in logs.
        while not self._stopping.is_set():
            try:
                result = await self.run_once()
                logger.debug("maintenance_cycle_completed result=%s", result)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("maintenance cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval_s)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("maintenance_scheduler_started interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self._interval_s)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("maintenance_scheduler_stopped")
