from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    # Request/version metadata plus the tenant the gateway headers resolved to.
    request_id: str
    api_version: str = Field(default=API_VERSION)
    tenant_id: str | None = None


class ErrorDetail(BaseModel):
    # Ledger error codes (RANGE_REQUIRED, NO_COVERING_PARTITION, ...) with structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def _meta(request: Request) -> dict[str, Any]:
    # tenant_id is omitted when the request was rejected before its principal was resolved.
    meta = ResponseMeta(request_id=get_request_id(request), tenant_id=getattr(request.state, "tenant_id", None))
    return meta.model_dump(exclude_none=True)


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    return data


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Every router is mounted under /v1, health included, so every success body is enveloped.
    return {"data": _jsonable(data), "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
