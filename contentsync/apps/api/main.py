from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from contentsync.apps.api.errors import (
    content_sync_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from contentsync.apps.api.response import API_VERSION
from contentsync.apps.api.routes.health import router as health_router
from contentsync.apps.api.routes.jobs import router as jobs_router
from contentsync.apps.api.routes.ops import router as ops_router
from contentsync.apps.api.routes.realtime import router as realtime_router
from contentsync.core.config import get_settings
from contentsync.core.errors import ContentSyncError
from contentsync.core.logging import configure_logging
from contentsync.persistence.db import SessionLocal
from contentsync.realtime.factory import get_realtime_transport
from contentsync.realtime.multiplexer import ChannelMultiplexer
from contentsync.realtime.transport import RealtimeTransport
from contentsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Release every realtime channel before the process exits.
    await app.state.multiplexer.close()


def create_app(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    transport: RealtimeTransport | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="contentsync API", version=settings.app_version, lifespan=_lifespan)
    # Composition root: one multiplexer and session factory per process.
    app.state.session_factory = session_factory or SessionLocal
    app.state.multiplexer = ChannelMultiplexer.from_settings(transport or get_realtime_transport(settings), settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        logger.debug(
            "request_completed method=%s path=%s status=%d latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ContentSyncError, content_sync_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(realtime_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema for every non-health route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="contentsync API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
