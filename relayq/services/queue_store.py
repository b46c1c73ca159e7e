from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.config import get_settings
from relayq.core.logging import mask_destination
from relayq.domain.models import QueueEntry
from relayq.domain.state import (
    ALL_STATUSES,
    CANCELLABLE_STATUSES,
    DELIVERED,
    FAILED,
    PENDING,
    PROCESSING,
    SCHEDULED,
    SENT,
    SENT_STATUSES,
    SKIPPED,
    sources_for,
)
from relayq.persistence.guards import require_tenant_id, tenant_channel_predicate, tenant_predicate
from relayq.services.channels import get_channel


logger = logging.getLogger(__name__)

# Skips outside a claim (admin cancel, STOP) only touch entries no worker owns.
_UNCLAIMED_SKIPPABLE = tuple(status for status in sources_for(SKIPPED) if status != PROCESSING)


def _utc_now() -> datetime:
    # Keep queue scheduling and claim bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueStats:
    pending: int
    scheduled: int
    processing: int
    sent: int
    delivered: int
    failed: int
    skipped: int
    total: int
    sent_today: int
    failed_today: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def retry_delay(attempts: int, *, base_minutes: int | None = None) -> timedelta:
    # Exponential backoff: base * 2^(attempts-1) -> 1m, 2m, 4m, 8m ...
    base = base_minutes if base_minutes is not None else get_settings().queue_retry_base_minutes
    exponent = max(0, int(attempts) - 1)
    return timedelta(minutes=max(1, int(base)) * (2**exponent))


async def create_entry(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    notification_type: str,
    content: str,
    channel: str = "sms",
    recipient_type: str = "customer",
    recipient_id: str | None = None,
    recipient_name: str | None = None,
    scheduled_at: datetime | None = None,
    max_attempts: int | None = None,
    commit: bool = True,
) -> QueueEntry:
    # Insert at pending (or scheduled when a send time is given) with billing units computed once.
    require_tenant_id(tenant_id)
    strategy = get_channel(channel)
    canonical = strategy.normalize(destination)
    info = strategy.segment(content)
    now = _utc_now()
    resolved_max = max_attempts if max_attempts is not None else get_settings().queue_default_max_attempts
    entry = QueueEntry(
        id=uuid4().hex,
        tenant_id=tenant_id,
        channel=strategy.name,
        destination=canonical,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        recipient_name=recipient_name,
        notification_type=notification_type,
        content=content,
        content_length=info.length,
        segment_count=info.segment_count,
        encoding=info.encoding,
        status=SCHEDULED if scheduled_at is not None else PENDING,
        scheduled_at=scheduled_at,
        attempts=0,
        max_attempts=max(1, int(resolved_max)),
        created_at=now,
        updated_at=now,
    )
    session.add(entry)
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info(
        "queue_entry_created tenant_id=%s channel=%s entry_id=%s destination=%s status=%s segments=%s",
        tenant_id,
        entry.channel,
        entry.id,
        mask_destination(canonical),
        entry.status,
        entry.segment_count,
    )
    return entry


async def get_entry(
    *,
    session: AsyncSession,
    tenant_id: str,
    entry_id: str,
    channel: str | None = None,
) -> QueueEntry | None:
    # Return None for tenant mismatch so callers keep 404 semantics.
    stmt = select(QueueEntry).where(tenant_predicate(QueueEntry, tenant_id), QueueEntry.id == entry_id)
    if channel is not None:
        stmt = stmt.where(QueueEntry.channel == channel)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_entry_by_provider_message_id(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    provider_message_id: str,
) -> QueueEntry | None:
    result = await session.execute(
        select(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.provider_message_id == provider_message_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def schedule_entry(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    at: datetime | None = None,
) -> bool:
    # Only pending rows move to scheduled; anything else is a silent no-op.
    now = _utc_now()
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.id == entry_id,
            QueueEntry.status == PENDING,
        )
        .values(status=SCHEDULED, scheduled_at=at or now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def claim_due(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    run_id: str,
    limit: int,
    now: datetime | None = None,
) -> list[QueueEntry]:
    """Atomically move up to ``limit`` due scheduled entries to processing.

    Candidates are locked with ``FOR UPDATE SKIP LOCKED`` so concurrent claimers
    partition the due set instead of blocking on each other. The follow-up
    update re-checks ``status = scheduled`` and returns only the ids it actually
    flipped, so a row can never be handed to two runs even on backends that
    ignore row locks. Returned entries are ordered oldest-due first.
    """
    require_tenant_id(tenant_id)
    if limit <= 0:
        return []
    now = now or _utc_now()
    scope = tenant_channel_predicate(QueueEntry, tenant_id, channel)
    candidate_ids = (
        await session.execute(
            select(QueueEntry.id)
            .where(
                scope,
                QueueEntry.status == SCHEDULED,
                QueueEntry.scheduled_at <= now,
            )
            .order_by(QueueEntry.scheduled_at.asc(), QueueEntry.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    if not candidate_ids:
        await session.commit()
        return []
    claimed_ids = (
        await session.execute(
            update(QueueEntry)
            .where(
                scope,
                QueueEntry.id.in_(list(candidate_ids)),
                QueueEntry.status == SCHEDULED,
            )
            .values(status=PROCESSING, claim_id=run_id, updated_at=now)
            .returning(QueueEntry.id)
            .execution_options(synchronize_session=False)
        )
    ).scalars().all()
    await session.commit()
    if not claimed_ids:
        return []
    rows = (
        await session.execute(
            select(QueueEntry)
            .where(
                scope,
                QueueEntry.id.in_(list(claimed_ids)),
                QueueEntry.claim_id == run_id,
            )
            .order_by(QueueEntry.scheduled_at.asc(), QueueEntry.created_at.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    await session.commit()
    logger.info(
        "queue_claimed tenant_id=%s channel=%s run_id=%s requested=%s claimed=%s",
        tenant_id,
        channel,
        run_id,
        limit,
        len(rows),
    )
    return list(rows)


async def mark_sent(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    run_id: str,
    provider_message_id: str | None,
    now: datetime | None = None,
) -> bool:
    # Only the run that still owns the claim may record the outcome.
    now = now or _utc_now()
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.id == entry_id,
            QueueEntry.status.in_(sources_for(SENT)),
            QueueEntry.claim_id == run_id,
        )
        .values(
            status=SENT,
            sent_at=now,
            last_attempt_at=now,
            provider_message_id=provider_message_id,
            claim_id=None,
            error_message=None,
            error_code=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_delivered(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    provider_message_id: str,
    now: datetime | None = None,
) -> bool:
    # Delivery receipts only carry the provider id and only promote rows still at sent.
    now = now or _utc_now()
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.provider_message_id == provider_message_id,
            QueueEntry.status.in_(sources_for(DELIVERED)),
        )
        .values(status=DELIVERED, delivered_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_failed(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    run_id: str,
    error: str,
    error_code: str | None = None,
    terminal: bool = False,
    now: datetime | None = None,
) -> bool:
    # Count the attempt, never past max_attempts; terminal errors exhaust the budget at once.
    now = now or _utc_now()
    if terminal:
        attempts_value = QueueEntry.max_attempts
    else:
        attempts_value = case(
            (QueueEntry.attempts + 1 > QueueEntry.max_attempts, QueueEntry.max_attempts),
            else_=QueueEntry.attempts + 1,
        )
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.id == entry_id,
            QueueEntry.status == PROCESSING,
            QueueEntry.claim_id == run_id,
        )
        .values(
            status=FAILED,
            attempts=attempts_value,
            last_attempt_at=now,
            error_message=error[:2000],
            error_code=error_code,
            claim_id=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_delivery_failed(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    provider_message_id: str,
    error: str,
    error_code: str | None = None,
    now: datetime | None = None,
) -> bool:
    # Provider-reported failures after acceptance are terminal; the attempt budget is exhausted.
    now = now or _utc_now()
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.provider_message_id == provider_message_id,
            QueueEntry.status == SENT,
        )
        .values(
            status=FAILED,
            attempts=QueueEntry.max_attempts,
            error_message=error[:2000],
            error_code=error_code,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def mark_skipped(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    reason: str,
    run_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    # Skips are compliance outcomes, not failures: attempts stay untouched.
    now = now or _utc_now()
    if run_id is None:
        owned = QueueEntry.status.in_(_UNCLAIMED_SKIPPABLE)
    else:
        owned = and_(QueueEntry.status == PROCESSING, QueueEntry.claim_id == run_id)
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.id == entry_id,
            owned,
        )
        .values(status=SKIPPED, skip_reason=reason, claim_id=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def release_entry(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    run_id: str,
    scheduled_at: datetime | None = None,
    now: datetime | None = None,
) -> bool:
    # Hand a claimed entry back to the due set without counting an attempt.
    now = now or _utc_now()
    values: dict[str, Any] = {"status": SCHEDULED, "claim_id": None, "updated_at": now}
    if scheduled_at is not None:
        values["scheduled_at"] = scheduled_at
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.id == entry_id,
            QueueEntry.status == PROCESSING,
            QueueEntry.claim_id == run_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def reset_stale(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    stale_after: timedelta | None = None,
    now: datetime | None = None,
) -> int:
    # Recover claims whose worker crashed or stalled mid-send.
    now = now or _utc_now()
    if stale_after is None:
        stale_after = timedelta(minutes=max(1, get_settings().queue_stale_after_minutes))
    cutoff = now - stale_after
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.status == PROCESSING,
            QueueEntry.updated_at < cutoff,
        )
        .values(status=SCHEDULED, claim_id=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    count = int(result.rowcount or 0)
    if count:
        logger.warning("queue_stale_claims_reset tenant_id=%s channel=%s count=%s", tenant_id, channel, count)
    return count


async def retry_eligible(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    limit: int = 20,
) -> list[QueueEntry]:
    rows = (
        await session.execute(
            select(QueueEntry)
            .where(
                tenant_channel_predicate(QueueEntry, tenant_id, channel),
                QueueEntry.status == FAILED,
                QueueEntry.attempts < QueueEntry.max_attempts,
            )
            .order_by(QueueEntry.last_attempt_at.asc())
            .limit(max(1, limit))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def schedule_retry(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    entry_id: str,
    now: datetime | None = None,
) -> datetime | None:
    # failed -> scheduled with exponential backoff; returns the new send time or None when not eligible.
    now = now or _utc_now()
    scope = tenant_channel_predicate(QueueEntry, tenant_id, channel)
    row = (
        await session.execute(
            select(QueueEntry.attempts, QueueEntry.max_attempts)
            .where(scope, QueueEntry.id == entry_id, QueueEntry.status == FAILED)
            .with_for_update()
        )
    ).one_or_none()
    if row is None or int(row.attempts) >= int(row.max_attempts):
        await session.commit()
        return None
    attempts = int(row.attempts)
    retry_at = now + retry_delay(attempts)
    result = await session.execute(
        update(QueueEntry)
        .where(
            scope,
            QueueEntry.id == entry_id,
            QueueEntry.status == FAILED,
            QueueEntry.attempts == attempts,
            QueueEntry.attempts < QueueEntry.max_attempts,
        )
        .values(status=SCHEDULED, scheduled_at=retry_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        return None
    logger.info(
        "queue_retry_scheduled tenant_id=%s channel=%s entry_id=%s attempts=%s retry_at=%s",
        tenant_id,
        channel,
        entry_id,
        attempts,
        retry_at.isoformat(),
    )
    return retry_at


async def cancel_pending_for_destination(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    destination: str,
    reason: str,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    # Opt-out must stop queued sends too, not only future ones.
    now = now or _utc_now()
    result = await session.execute(
        update(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.destination == destination,
            QueueEntry.status.in_(CANCELLABLE_STATUSES),
        )
        .values(status=SKIPPED, skip_reason=reason, claim_id=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return int(result.rowcount or 0)


async def list_entries(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str | None = None,
    statuses: Sequence[str] | None = None,
    recipient_type: str | None = None,
    notification_type: str | None = None,
    destination: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[QueueEntry], int]:
    # Tenant scoping prevents cross-tenant leakage; filters compose on top of it.
    conditions = [tenant_predicate(QueueEntry, tenant_id)]
    if channel is not None:
        conditions.append(QueueEntry.channel == channel)
    if statuses:
        conditions.append(QueueEntry.status.in_([s for s in statuses if s in ALL_STATUSES]))
    if recipient_type:
        conditions.append(QueueEntry.recipient_type == recipient_type)
    if notification_type:
        conditions.append(QueueEntry.notification_type == notification_type)
    if destination:
        conditions.append(QueueEntry.destination == destination)
    rows = (
        await session.execute(
            select(QueueEntry)
            .where(*conditions)
            .order_by(QueueEntry.created_at.desc(), QueueEntry.id.desc())
            .limit(max(1, min(int(limit), 500)))
            .offset(max(0, int(offset)))
        )
    ).scalars().all()
    total = await session.scalar(select(func.count()).select_from(QueueEntry).where(*conditions))
    return list(rows), int(total or 0)


async def get_stats(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    now: datetime | None = None,
) -> QueueStats:
    now = now or _utc_now()
    scope = tenant_channel_predicate(QueueEntry, tenant_id, channel)
    counts = {status: 0 for status in ALL_STATUSES}
    rows = (
        await session.execute(
            select(QueueEntry.status, func.count()).where(scope).group_by(QueueEntry.status)
        )
    ).all()
    for status, count in rows:
        counts[str(status)] = int(count)
    day_ago = now - timedelta(hours=24)
    sent_today = await session.scalar(
        select(func.count())
        .select_from(QueueEntry)
        .where(scope, QueueEntry.status.in_(SENT_STATUSES), QueueEntry.sent_at > day_ago)
    )
    failed_today = await session.scalar(
        select(func.count())
        .select_from(QueueEntry)
        .where(scope, QueueEntry.status == FAILED, QueueEntry.updated_at > day_ago)
    )
    return QueueStats(
        pending=counts[PENDING],
        scheduled=counts[SCHEDULED],
        processing=counts[PROCESSING],
        sent=counts[SENT],
        delivered=counts[DELIVERED],
        failed=counts[FAILED],
        skipped=counts[SKIPPED],
        total=sum(counts.values()),
        sent_today=int(sent_today or 0),
        failed_today=int(failed_today or 0),
    )


async def daily_count(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    now: datetime | None = None,
) -> int:
    # Rolling 24h window of accepted sends, used for daily-limit enforcement.
    now = now or _utc_now()
    total = await session.scalar(
        select(func.count())
        .select_from(QueueEntry)
        .where(
            tenant_channel_predicate(QueueEntry, tenant_id, channel),
            QueueEntry.status.in_(SENT_STATUSES),
            QueueEntry.sent_at > now - timedelta(hours=24),
        )
    )
    return int(total or 0)


async def is_daily_limit_exceeded(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    daily_limit: int,
    now: datetime | None = None,
) -> bool:
    count = await daily_count(session=session, tenant_id=tenant_id, channel=channel, now=now)
    return count >= daily_limit
