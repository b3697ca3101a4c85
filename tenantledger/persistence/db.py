from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession, async_sessionmaker, create_async_engine

from tenantledger.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Bound the asyncpg pool; ledger appends and delivery sweeps share it with the API.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        # Partition DDL runs on its own autocommit connection and is subject to the same timeout.
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
engine = create_async_engine(settings.database_url, **_engine_kwargs)
# Lifecycle code keeps using catalog rows across its per-batch commits.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    # Raw sessions carry no tenant context; tenant-scoped models reject them.
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def autocommit_connection() -> AsyncIterator[AsyncConnection]:
    # For statements PostgreSQL refuses inside a transaction block (DETACH PARTITION CONCURRENTLY).
    async with engine.connect() as conn:
        conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        yield conn


def dialect_name(session: AsyncSession) -> str:
    # Physical partition DDL only exists on "postgresql"; tests run on "sqlite".
    return session.get_bind().dialect.name


def pool_stats() -> dict[str, int | None]:
    # Pool counters reported by /v1/health/ready; pools without a counter report None.
    pool = engine.sync_engine.pool
    counters = {
        "size": getattr(pool, "size", None),
        "checked_out": getattr(pool, "checkedout", None),
        "checked_in": getattr(pool, "checkedin", None),
        "overflow": getattr(pool, "overflow", None),
    }
    return {name: int(fn()) if callable(fn) else None for name, fn in counters.items()}
