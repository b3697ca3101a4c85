from __future__ import annotations

import asyncio
from datetime import timedelta
import logging

from arq import create_pool
from arq.connections import RedisSettings

from tenantledger.core.config import get_settings


logger = logging.getLogger(__name__)

DELIVER_JOB = "deliver_channel"

_queue_pool = None
_queue_pool_loop = None
_queue_lock: asyncio.Lock | None = None


async def get_notification_queue_pool():
    # Cache the ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _queue_pool, _queue_pool_loop, _queue_lock
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool_loop != current_loop:
        _queue_pool = None
        _queue_lock = asyncio.Lock()
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_channel_delivery(*, tenant_id: str, delivery_id: str, defer_ms: int = 0) -> bool:
    # Best-effort publish; the due-delivery sweep re-enqueues anything lost here.
    settings = get_settings()
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    try:
        redis = await get_notification_queue_pool()
        await redis.enqueue_job(
            DELIVER_JOB,
            tenant_id,
            delivery_id,
            _queue_name=settings.notify_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception as exc:  # noqa: BLE001 - enqueue stays best-effort and relies on the sweep.
        logger.warning("notification_enqueue_failed delivery_id=%s", delivery_id, exc_info=exc)
        return False
