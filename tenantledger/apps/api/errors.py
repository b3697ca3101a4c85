from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantledger.apps.api.response import error_response
from tenantledger.core.errors import (
    LedgerError,
    NoCoveringPartition,
    NotFoundError,
    RangeRequired,
    TenantIsolationViolation,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; subclasses inherit their parent's status.
_LEDGER_ERROR_STATUS: tuple[tuple[type[LedgerError], int], ...] = (
    (TenantIsolationViolation, 403),
    (ValidationError, 422),
    (RangeRequired, 400),
    (NoCoveringPartition, 409),
    (NotFoundError, 404),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def ledger_error_status(exc: LedgerError) -> int:
    for error_type, status_code in _LEDGER_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body and query validation share the ledger's VALIDATION_ERROR code.
    payload = error_response(
        request=request,
        code=ValidationError.code,
        message="Validation error",
        details={
            "errors": [
                {"loc": list(error.get("loc", ())), "msg": str(error.get("msg")), "type": error.get("type")}
                for error in exc.errors()
            ]
        },
    )
    return JSONResponse(content=payload, status_code=422)


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = ledger_error_status(exc)
    details = dict(exc.details) or None
    if isinstance(exc, TenantIsolationViolation):
        # Never echo the other tenant's id back to the caller.
        details = {"operation": exc.operation}
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
