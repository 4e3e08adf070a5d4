from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sitenotify.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sitenotify.apps.api.response import API_VERSION
from sitenotify.apps.api.routes.health import router as health_router
from sitenotify.apps.api.routes.notifications import router as notifications_router
from sitenotify.apps.api.routes.ops import router as ops_router
from sitenotify.core.errors import SiteNotifyError
from sitenotify.core.logging import configure_logging
from sitenotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    from sitenotify.persistence.db import check_schema_revision

    # Migrations run out of band with alembic; startup only reports drift.
    await check_schema_revision()
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="SiteNotify API", version=API_VERSION, lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code}")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SiteNotifyError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    # Operator endpoints: breakers, alerts, health and error statistics.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
