from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from relayq.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools for predictable latency under load.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
else:
    _engine_kwargs["connect_args"] = {"timeout": 30}
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


if settings.database_url.startswith("sqlite"):
    # SQLite ignores FOR UPDATE; take the write lock up front so concurrent claimers serialize.
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for health output without querying Postgres internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
