from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantledger.apps.api.errors import (
    http_exception_handler,
    ledger_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantledger.apps.api.response import API_VERSION
from tenantledger.apps.api.routes.activity import router as activity_router
from tenantledger.apps.api.routes.analytics import router as analytics_router
from tenantledger.apps.api.routes.health import router as health_router
from tenantledger.apps.api.routes.notifications import router as notifications_router
from tenantledger.apps.api.routes.ops import router as ops_router
from tenantledger.core.config import get_settings
from tenantledger.core.errors import LedgerError
from tenantledger.core.logging import configure_logging
from tenantledger.services.background import drain


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let in-flight trigger evaluation and inline deliveries finish before exit.
    await drain(timeout=10.0)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Tenant Ledger API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request path=%s method=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            request.method,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(LedgerError)
    async def _ledger_exception_handler(request: Request, exc: LedgerError):
        return await ledger_exception_handler(request, exc)

    app.include_router(activity_router, prefix=f"/{API_VERSION}")
    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    app.include_router(analytics_router, prefix=f"/{API_VERSION}")
    # Ops endpoints require the admin role.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    logger.info("api_created app_name=%s", get_settings().app_name)
    return app


app = create_app()
