from __future__ import annotations

import asyncio
import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import create_async_engine

from relayq.core.config import get_settings
from relayq.domain.models import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# An explicit -x/ini url wins; otherwise migrate the database the app is configured for.
if not (config.get_main_option("sqlalchemy.url") or "").strip():
    config.set_main_option("sqlalchemy.url", get_settings().database_url)

target_metadata = Base.metadata


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name().startswith("sqlite")


def _configure_kwargs(url: str) -> dict:
    return dict(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place.
        render_as_batch=_is_sqlite(url),
    )


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(url=url, literal_binds=True, **_configure_kwargs(url))
    with context.begin_transaction():
        context.run_migrations()


def _run_migrations_sync(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_kwargs(str(connection.engine.url)))
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url = config.get_main_option("sqlalchemy.url")
    engine = create_async_engine(url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            logger.info("migrating database=%s", make_url(url).render_as_string(hide_password=True))
            await connection.run_sync(_run_migrations_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
