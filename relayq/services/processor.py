from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import math
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.config import get_settings
from relayq.core.errors import IntegrationUnavailableError, ProviderConfigError, ProviderError
from relayq.core.logging import mask_destination
from relayq.domain.models import QueueEntry
from relayq.domain.state import (
    FAILED,
    SKIP_QUIET_HOURS,
    SKIP_RECIPIENT_OPTED_OUT,
    SKIP_TENANT_DISABLED,
    is_terminal,
)
from relayq.providers.messaging.base import MessagingProvider, SendRequest, SendResult
from relayq.providers.messaging.factory import get_messaging_provider
from relayq.services import queue_store
from relayq.services.compliance import evaluate_send_permission, is_quiet_hours
from relayq.services.opt_outs import is_opted_out
from relayq.services.settings_store import HEALTH_DEGRADED, HEALTH_HEALTHY, SettingsStore
from relayq.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

HALT_TENANT_DISABLED = SKIP_TENANT_DISABLED
HALT_QUIET_HOURS = SKIP_QUIET_HOURS
HALT_DAILY_LIMIT = "daily_limit"

ProviderFactory = Callable[[str, Any], MessagingProvider]
SleepFn = Callable[[float], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def rate_delay_seconds(rate_per_second: int | None) -> float:
    # ceil(1000ms / rate) between dispatches; a missing or non-positive rate means one per second.
    rate = int(rate_per_second or 1)
    if rate <= 0:
        rate = 1
    return math.ceil(1000 / rate) / 1000.0


def _subject_for(notification_type: str) -> str:
    return notification_type.replace("_", " ").strip().capitalize() or "Notification"


@dataclass(frozen=True)
class EntryError:
    entry_id: str
    error: str
    error_code: str | None = None


@dataclass
class ProcessResult:
    tenant_id: str
    channel: str
    run_id: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    # Claimed entries handed back to scheduled without an attempt (quiet hours, daily limit).
    released: int = 0
    stale_reset: int = 0
    claimed: int = 0
    # Why the pass stopped before or during the batch; None when it ran to completion.
    halted_reason: str | None = None
    errors: list[EntryError] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class Processor:
    """Runs one processing pass over one tenant's due entries for a channel.

    Dependencies are injected so tests can drive a pass with in-memory settings,
    a fake provider, and a recording sleep. Entries are dispatched one at a
    time in claim order, throttled by the tenant's per-second rate limit.
    """

    def __init__(
        self,
        *,
        session: AsyncSession,
        settings_store: SettingsStore,
        provider_factory: ProviderFactory | None = None,
        sleep: SleepFn | None = None,
        batch_size: int | None = None,
        send_timeout_s: float | None = None,
    ) -> None:
        app_settings = get_settings()
        self._session = session
        self._settings_store = settings_store
        self._provider_factory = provider_factory or get_messaging_provider
        self._sleep = sleep or asyncio.sleep
        self._batch_size = max(1, int(batch_size or app_settings.queue_batch_size))
        self._send_timeout_s = float(send_timeout_s or app_settings.provider_send_timeout_s)

    async def process_tenant(self, tenant_id: str, channel: str = "sms", *, run_id: str | None = None) -> ProcessResult:
        run_id = run_id or uuid4().hex
        result = ProcessResult(tenant_id=tenant_id, channel=channel, run_id=run_id)
        session = self._session

        tenant_settings = await self._settings_store.get(tenant_id, channel)
        if tenant_settings is None or not bool(getattr(tenant_settings, "enabled", False)):
            result.halted_reason = HALT_TENANT_DISABLED
            return result

        now = _utc_now()
        if is_quiet_hours(tenant_settings, now):
            # Entries stay scheduled and are picked up by the first pass after the window.
            result.halted_reason = HALT_QUIET_HOURS
            return result

        daily_limit = int(getattr(tenant_settings, "daily_limit", 0) or 0)
        sent_today = await queue_store.daily_count(session=session, tenant_id=tenant_id, channel=channel, now=now)
        if sent_today >= daily_limit:
            result.halted_reason = HALT_DAILY_LIMIT
            logger.info(
                "processor_daily_limit_reached tenant_id=%s channel=%s sent_today=%s daily_limit=%s",
                tenant_id,
                channel,
                sent_today,
                daily_limit,
            )
            return result

        result.stale_reset = await queue_store.reset_stale(
            session=session, tenant_id=tenant_id, channel=channel, now=now
        )
        claimed = await queue_store.claim_due(
            session=session,
            tenant_id=tenant_id,
            channel=channel,
            run_id=run_id,
            limit=self._batch_size,
            now=now,
        )
        result.claimed = len(claimed)
        if not claimed:
            return result

        remaining_quota = daily_limit - sent_today
        delay_s = rate_delay_seconds(getattr(tenant_settings, "rate_limit_per_second", 1))
        provider: MessagingProvider | None = None
        index = 0
        try:
            provider = self._provider_factory(channel, tenant_settings)
            for index, entry in enumerate(claimed):
                if result.sent >= remaining_quota:
                    result.halted_reason = HALT_DAILY_LIMIT
                    result.released += await self._release(claimed[index:], run_id)
                    break
                dispatched = await self._process_entry(provider, entry, tenant_settings, result)
                if dispatched and index < len(claimed) - 1:
                    await self._sleep(delay_s)
        except ProviderConfigError:
            # Misconfigured provider: hand unprocessed claims back instead of burning attempts.
            await self._release(claimed[index:], run_id)
            raise
        finally:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()

        await self._update_health(tenant_id, channel, result)
        logger.info(
            "processor_pass_completed tenant_id=%s channel=%s run_id=%s claimed=%s sent=%s failed=%s skipped=%s released=%s",
            tenant_id,
            channel,
            run_id,
            result.claimed,
            result.sent,
            result.failed,
            result.skipped,
            result.released,
        )
        return result

    async def _process_entry(
        self,
        provider: MessagingProvider,
        entry: QueueEntry,
        tenant_settings: Any,
        result: ProcessResult,
    ) -> bool:
        # Returns True when the provider was invoked, which is what the rate limit meters.
        session = self._session
        tenant_id = entry.tenant_id
        channel = entry.channel

        if await is_opted_out(session=session, tenant_id=tenant_id, destination=entry.destination, channel=channel):
            await queue_store.mark_skipped(
                session=session,
                tenant_id=tenant_id,
                channel=channel,
                entry_id=entry.id,
                run_id=result.run_id,
                reason=SKIP_RECIPIENT_OPTED_OUT,
            )
            result.processed += 1
            result.skipped += 1
            return False

        now = _utc_now()
        permission = evaluate_send_permission(tenant_settings, entry.destination, False, channel=channel, now=now)
        if not permission.can_send:
            if permission.reason == SKIP_QUIET_HOURS:
                # Quiet hours started mid-batch: defer without consuming an attempt.
                if await queue_store.release_entry(
                    session=session,
                    tenant_id=tenant_id,
                    channel=channel,
                    entry_id=entry.id,
                    run_id=result.run_id,
                    scheduled_at=permission.retry_after,
                ):
                    result.released += 1
                return False
            await queue_store.mark_skipped(
                session=session,
                tenant_id=tenant_id,
                channel=channel,
                entry_id=entry.id,
                run_id=result.run_id,
                reason=permission.reason or "not_permitted",
            )
            result.processed += 1
            result.skipped += 1
            return False

        # Do not hold a database transaction open across the provider call.
        await session.commit()
        outcome = await self._dispatch(provider, entry, tenant_settings)
        result.processed += 1
        if outcome.success:
            applied = await queue_store.mark_sent(
                session=session,
                tenant_id=tenant_id,
                channel=channel,
                entry_id=entry.id,
                run_id=result.run_id,
                provider_message_id=outcome.provider_message_id,
            )
            if not applied:
                # The claim went stale and was reset while the provider call was in flight.
                increment_counter(f"queue_claim_lost_total.{channel}")
                logger.warning(
                    "queue_entry_claim_lost tenant_id=%s channel=%s entry_id=%s run_id=%s provider_message_id=%s",
                    tenant_id,
                    channel,
                    entry.id,
                    result.run_id,
                    outcome.provider_message_id,
                )
            result.sent += 1
            increment_counter(f"queue_sent_total.{channel}")
            logger.info(
                "queue_entry_sent tenant_id=%s channel=%s entry_id=%s destination=%s provider_message_id=%s",
                tenant_id,
                channel,
                entry.id,
                mask_destination(entry.destination),
                outcome.provider_message_id,
            )
            return True

        error = outcome.error or "provider send failed"
        await queue_store.mark_failed(
            session=session,
            tenant_id=tenant_id,
            channel=channel,
            entry_id=entry.id,
            run_id=result.run_id,
            error=error,
            error_code=outcome.error_code,
            terminal=not outcome.retryable,
        )
        exhausted = not outcome.retryable or is_terminal(
            FAILED, attempts=entry.attempts + 1, max_attempts=entry.max_attempts
        )
        result.failed += 1
        result.errors.append(EntryError(entry_id=entry.id, error=error, error_code=outcome.error_code))
        increment_counter(f"queue_failed_total.{channel}")
        logger.warning(
            "queue_entry_failed tenant_id=%s channel=%s entry_id=%s destination=%s error_code=%s retryable=%s exhausted=%s",
            tenant_id,
            channel,
            entry.id,
            mask_destination(entry.destination),
            outcome.error_code,
            outcome.retryable,
            exhausted,
        )
        return True

    async def _dispatch(self, provider: MessagingProvider, entry: QueueEntry, tenant_settings: Any) -> SendResult:
        request = SendRequest(
            tenant_id=entry.tenant_id,
            channel=entry.channel,
            destination=entry.destination,
            content=entry.content,
            sender_id=getattr(tenant_settings, "sender_id", None),
            subject=_subject_for(entry.notification_type),
            idempotency_key=entry.id,
        )
        try:
            return await asyncio.wait_for(provider.send(request), timeout=self._send_timeout_s)
        except asyncio.TimeoutError:
            return SendResult(success=False, error="provider send timed out", error_code="timeout", retryable=True)
        except IntegrationUnavailableError as exc:
            return SendResult(success=False, error=str(exc), error_code="circuit_open", retryable=True)
        except ProviderError as exc:
            return SendResult(success=False, error=str(exc), error_code=exc.error_code, retryable=exc.retryable)

    async def _release(self, entries: Sequence[QueueEntry], run_id: str) -> int:
        released = 0
        for entry in entries:
            if await queue_store.release_entry(
                session=self._session,
                tenant_id=entry.tenant_id,
                channel=entry.channel,
                entry_id=entry.id,
                run_id=run_id,
            ):
                released += 1
        return released

    async def _update_health(self, tenant_id: str, channel: str, result: ProcessResult) -> None:
        if result.sent > 0:
            status = HEALTH_HEALTHY
        elif result.failed > 0:
            status = HEALTH_DEGRADED
        else:
            return
        await self._settings_store.update_health(tenant_id, channel, status)
