from __future__ import annotations

import logging

from arq.connections import RedisSettings

from tabula.core.config import get_settings
from tabula.core.logging import configure_logging
from tabula.services.filter_cache import CACHE_BACKEND_REDIS, FilterCache, build_filter_cache
from tabula.services.maintenance import MaintenanceScheduler, run_maintenance_cycle

logger = logging.getLogger(__name__)


def _shared_cache() -> FilterCache | None:
    # A process-local cache in the worker would never see API entries.
    settings = get_settings()
    if settings.filter_cache_backend.lower() != CACHE_BACKEND_REDIS:
        return None
    return build_filter_cache(settings)


async def run_maintenance(ctx) -> dict:
    # On-demand cycle for operators; shares the Redis lock with the scheduled loop.
    result = await run_maintenance_cycle(cache=ctx.get("filter_cache"), redis=ctx.get("redis"))
    logger.info("maintenance_job_completed status=%s", result.get("status"))
    return result


async def _startup(ctx) -> None:
    # Run the sweep loop with the worker so grants expire even when API instances disable it.
    configure_logging()
    ctx["filter_cache"] = _shared_cache()
    scheduler = MaintenanceScheduler(cache=ctx["filter_cache"], redis=ctx.get("redis"))
    scheduler.start()
    ctx["scheduler"] = scheduler


async def _shutdown(ctx) -> None:
    scheduler = ctx.get("scheduler")
    if scheduler is not None:
        await scheduler.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "tabula:maintenance"
    functions = [run_maintenance]
    on_startup = _startup
    on_shutdown = _shutdown
