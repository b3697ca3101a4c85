from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenantledger.apps.api.response import error_response, success_response
from tenantledger.core.config import get_settings
from tenantledger.persistence.db import get_session, pool_stats
from tenantledger.services.background import pending_count


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _queue_reachable() -> bool:
    # Only queue mode depends on Redis; inline deliveries run in-process.
    client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as exc:
        logger.warning("readiness_queue_unreachable", exc_info=exc)
        return False
    finally:
        await client.aclose()


@router.get("/health")
async def health(request: Request) -> dict:
    return success_response(request=request, data={"status": "ok"})


@router.get("/health/ready")
async def ready(request: Request):
    # Readiness needs a reachable database; pool counters help diagnose saturation.
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_check_failed", exc_info=exc)
        payload = error_response(request=request, code="SERVICE_UNAVAILABLE", message="Database unavailable")
        return JSONResponse(content=payload, status_code=503)
    if get_settings().notify_execution_mode == "queue" and not await _queue_reachable():
        payload = error_response(request=request, code="SERVICE_UNAVAILABLE", message="Delivery queue unavailable")
        return JSONResponse(content=payload, status_code=503)
    data = {"status": "ready", "db_pool": pool_stats(), "background_tasks": pending_count()}
    return success_response(request=request, data=data)
