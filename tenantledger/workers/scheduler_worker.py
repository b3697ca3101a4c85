from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tenantledger.core.config import get_settings
from tenantledger.core.logging import configure_logging
from tenantledger.persistence.partitions import get_partition_router
from tenantledger.services.analytics import run_rollups
from tenantledger.services.lifecycle import run_lifecycle


logger = logging.getLogger(__name__)


async def partition_lifecycle(ctx) -> dict:
    report = await run_lifecycle()
    # This process never writes events, but keep its router honest for ad-hoc calls.
    get_partition_router().invalidate()
    return report.as_dict()


async def activity_rollups(ctx) -> dict:
    return await run_rollups()


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("scheduler_worker_started")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = f"{settings.notify_queue_name}:scheduler"
    functions = [partition_lifecycle, activity_rollups]
    # Lifecycle runs daily and again at noon so a failed night run is retried the same day.
    cron_jobs = [
        cron(partition_lifecycle, hour={2, 12}, minute=10, unique=True, run_at_startup=True),
        cron(activity_rollups, minute=5, unique=True),
    ]
    on_startup = _startup
