from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from tenantledger.core.config import get_settings
from tenantledger.core.logging import configure_logging
from tenantledger.domain.vocab import DELIVERY_RETRYING
from tenantledger.services.notifications import (
    attempt_channel_delivery,
    dispatch_due_deliveries,
    expire_due_notifications,
)
from tenantledger.services.notifications.queue import enqueue_channel_delivery


logger = logging.getLogger(__name__)


async def deliver_channel(ctx, tenant_id: str, delivery_id: str) -> str:
    # One queued attempt; a retry is re-enqueued with the computed backoff.
    outcome = await attempt_channel_delivery(tenant_id, delivery_id)
    if outcome is None:
        return "skipped"
    if outcome.retry_in_ms is not None and (outcome.status == DELIVERY_RETRYING or not outcome.attempted):
        await enqueue_channel_delivery(tenant_id=tenant_id, delivery_id=delivery_id, defer_ms=outcome.retry_in_ms)
    return outcome.status


async def _sweep_loop() -> None:
    # Expire overdue notifications and re-enqueue due deliveries lost by enqueue or worker outages.
    settings = get_settings()
    interval_s = max(1, int(settings.notify_sweep_interval_s))
    batch = max(1, int(settings.notify_sweep_batch_size))
    while True:
        try:
            await expire_due_notifications(limit=batch)
            await dispatch_due_deliveries(limit=batch)
        except Exception:  # noqa: BLE001 - keep the sweep alive while surfacing failures in worker logs.
            logger.exception("notification sweep failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["sweep_task"] = asyncio.create_task(_sweep_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("sweep_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    # Delivery retries are scheduled explicitly; ARQ-level retries would double count attempts.
    max_tries = 1
    functions = [deliver_channel]
    on_startup = _startup
    on_shutdown = _shutdown
