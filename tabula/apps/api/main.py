from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tabula.apps.api.errors import (
    http_exception_handler,
    tabula_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tabula.apps.api.rate_limit import build_rate_limiter
from tabula.apps.api.response import API_VERSION
from tabula.apps.api.routes.audit import router as audit_router
from tabula.apps.api.routes.databases import router as databases_router
from tabula.apps.api.routes.health import router as health_router
from tabula.apps.api.routes.permissions import router as permissions_router
from tabula.apps.api.routes.plan_limits import router as plan_limits_router
from tabula.apps.api.routes.rows import router as rows_router
from tabula.apps.api.routes.tables import router as tables_router
from tabula.core.config import get_settings
from tabula.core.errors import TabulaError
from tabula.core.logging import configure_logging
from tabula.services.filter_cache import build_filter_cache
from tabula.services.maintenance import MaintenanceScheduler


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Shared cache and limiter live on app state so tests can swap them.
    settings = get_settings()
    app.state.filter_cache = build_filter_cache(settings)
    app.state.rate_limiter = build_rate_limiter(settings)
    scheduler = MaintenanceScheduler(
        cache=app.state.filter_cache,
        rate_limiter=app.state.rate_limiter,
    )
    app.state.maintenance_scheduler = scheduler
    if settings.maintenance_enabled:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Tabula API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    for exc_class, handler in (
        (StarletteHTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (TabulaError, tabula_error_handler),
        (Exception, unhandled_exception_handler),
    ):
        app.add_exception_handler(exc_class, handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(databases_router, prefix=f"/{API_VERSION}")
    app.include_router(tables_router, prefix=f"/{API_VERSION}")
    app.include_router(rows_router, prefix=f"/{API_VERSION}")
    app.include_router(permissions_router, prefix=f"/{API_VERSION}")
    app.include_router(plan_limits_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    # Unversioned probe path for load balancers.
    app.include_router(health_router, include_in_schema=False)

    return app


app = create_app()
