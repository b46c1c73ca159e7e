from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from relayq.core.config import get_settings
from relayq.core.logging import configure_logging
from relayq.persistence.db import SessionLocal
from relayq.services.processor import Processor
from relayq.services.scheduler import run_processing_loop, run_retry_loop
from relayq.services.settings_store import SqlSettingsStore


logger = logging.getLogger(__name__)


async def process_tenant_queue(ctx, tenant_id: str, channel: str = "sms") -> dict:
    # On-demand pass for one tenant, e.g. enqueued right after a burst of new entries.
    async with SessionLocal() as session:
        processor = Processor(session=session, settings_store=SqlSettingsStore(session))
        result = await processor.process_tenant(tenant_id, channel)
    return result.as_dict()


async def _startup(ctx) -> None:
    # Start both polling loops with the worker so delivery continues when the API is idle.
    configure_logging()
    ctx["processing_task"] = asyncio.create_task(run_processing_loop())
    ctx["retry_task"] = asyncio.create_task(run_retry_loop())
    logger.info("notification_worker_started")


async def _shutdown(ctx) -> None:
    # Cancel loops on shutdown to avoid dangling coroutines in tests and local runs.
    for key in ("processing_task", "retry_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_worker_name
    max_tries = 1
    functions = [process_tenant_queue]
    on_startup = _startup
    on_shutdown = _shutdown
