from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any tenantledger module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="tenantledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/ledger.db"
os.environ["NOTIFY_EXECUTION_MODE"] = "inline"
os.environ["NOTIFY_BACKOFF_MS"] = "1"
os.environ["NOTIFY_BACKOFF_MAX_MS"] = "5"
os.environ["LEDGER_PARTITION_CACHE_TTL_S"] = "0"
os.environ.pop("OPS_ALERT_WEBHOOK_URL", None)

import pytest  # noqa: E402

from tenantledger.core.config import get_settings  # noqa: E402
from tenantledger.domain.models import Base  # noqa: E402
from tenantledger.persistence.db import engine  # noqa: E402
from tenantledger.persistence.partitions import get_partition_router  # noqa: E402
from tenantledger.services.alerts import reset_alert_dedupe  # noqa: E402
from tenantledger.services.background import cancel_all, drain  # noqa: E402
from tenantledger.services.notifications.channels import reset_channel_senders  # noqa: E402


@pytest.fixture(autouse=True)
async def ledger_database() -> None:
    # Fresh schema per test; background deliveries and trigger tasks finish before teardown.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    get_partition_router().invalidate()
    reset_channel_senders()
    reset_alert_dedupe()
    yield
    await drain(timeout=10.0)
    cancel_all()
    reset_channel_senders()
    get_settings.cache_clear()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
