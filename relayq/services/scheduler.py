from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relayq.core.config import get_settings
from relayq.persistence.db import SessionLocal
from relayq.services import queue_store
from relayq.services.audit import record_event
from relayq.services.channels import CHANNELS
from relayq.services.processor import ProcessResult, Processor, ProviderFactory, SleepFn
from relayq.services.settings_store import SettingsStore, SqlSettingsStore


logger = logging.getLogger(__name__)

SettingsStoreFactory = Callable[[AsyncSession], SettingsStore]


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow loops to start before migrations by treating missing-table errors as a temporary state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


@dataclass
class TenantPassOutcome:
    tenant_id: str
    channel: str
    result: ProcessResult | None = None
    error: str | None = None


async def _enabled_tenants(
    session_factory: async_sessionmaker[AsyncSession],
    store_factory: SettingsStoreFactory,
    channel: str,
) -> list[str]:
    async with session_factory() as session:
        return await store_factory(session).list_enabled_tenants(channel)


async def run_processing_cycle(
    *,
    channel: str = "sms",
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings_store_factory: SettingsStoreFactory | None = None,
    provider_factory: ProviderFactory | None = None,
    sleep: SleepFn | None = None,
    batch_size: int | None = None,
) -> list[TenantPassOutcome]:
    """Run one processing pass for every tenant with ``channel`` enabled.

    Each tenant gets its own session and its own error boundary: an exception
    in one pass is logged and audited as ``processor.pass_failed`` and the
    cycle moves on to the next tenant.
    """
    session_factory = session_factory or SessionLocal
    store_factory = settings_store_factory or SqlSettingsStore
    try:
        tenant_ids = await _enabled_tenants(session_factory, store_factory, channel)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return []
        raise

    outcomes: list[TenantPassOutcome] = []
    for tenant_id in tenant_ids:
        outcome = TenantPassOutcome(tenant_id=tenant_id, channel=channel)
        try:
            async with session_factory() as session:
                processor = Processor(
                    session=session,
                    settings_store=store_factory(session),
                    provider_factory=provider_factory,
                    sleep=sleep,
                    batch_size=batch_size,
                )
                outcome.result = await processor.process_tenant(tenant_id, channel)
        except Exception as exc:  # noqa: BLE001 - one tenant's failure must not abort the others
            outcome.error = f"{type(exc).__name__}: {exc}"
            logger.exception("processor_pass_failed tenant_id=%s channel=%s", tenant_id, channel)
            await record_event(
                tenant_id=tenant_id,
                actor_type="system",
                actor_id="processor",
                event_type="processor.pass_failed",
                outcome="failure",
                resource_type="queue",
                metadata={"channel": channel, "error_type": type(exc).__name__},
                error_code="PROCESSOR_PASS_FAILED",
            )
        outcomes.append(outcome)
    return outcomes


async def run_retry_cycle(
    *,
    channel: str = "sms",
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings_store_factory: SettingsStoreFactory | None = None,
    limit: int | None = None,
) -> dict[str, int]:
    # Move retry-eligible failures back to scheduled with backoff; isolated per tenant like processing.
    session_factory = session_factory or SessionLocal
    store_factory = settings_store_factory or SqlSettingsStore
    batch = max(1, int(limit or get_settings().queue_retry_batch_size))
    try:
        tenant_ids = await _enabled_tenants(session_factory, store_factory, channel)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"tenants": 0, "rescheduled": 0}
        raise

    rescheduled = 0
    for tenant_id in tenant_ids:
        try:
            async with session_factory() as session:
                entries = await queue_store.retry_eligible(
                    session=session, tenant_id=tenant_id, channel=channel, limit=batch
                )
                for entry in entries:
                    retry_at = await queue_store.schedule_retry(
                        session=session, tenant_id=tenant_id, channel=channel, entry_id=entry.id
                    )
                    if retry_at is not None:
                        rescheduled += 1
        except Exception:  # noqa: BLE001 - keep retrying other tenants while surfacing errors in logs
            logger.exception("retry_cycle_failed tenant_id=%s channel=%s", tenant_id, channel)
    return {"tenants": len(tenant_ids), "rescheduled": rescheduled}


async def run_processing_loop(channels: Iterable[str] | None = None, **cycle_kwargs: Any) -> None:
    # Poll on a fixed cadence and continue after failures to keep delivery live.
    interval = max(1, int(get_settings().processor_poll_interval_s))
    names = list(channels or CHANNELS)
    while True:
        for channel in names:
            try:
                await run_processing_cycle(channel=channel, **cycle_kwargs)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("processing cycle failed channel=%s", channel)
        await asyncio.sleep(interval)


async def run_retry_loop(channels: Iterable[str] | None = None, **cycle_kwargs: Any) -> None:
    interval = max(1, int(get_settings().retry_poll_interval_s))
    names = list(channels or CHANNELS)
    while True:
        for channel in names:
            try:
                await run_retry_cycle(channel=channel, **cycle_kwargs)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("retry cycle failed channel=%s", channel)
        await asyncio.sleep(interval)
