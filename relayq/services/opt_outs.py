from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.errors import InvalidDestinationError
from relayq.core.logging import mask_destination
from relayq.domain.models import OptOutRecord
from relayq.domain.state import SKIP_RECIPIENT_OPTED_OUT
from relayq.persistence.guards import tenant_channel_predicate
from relayq.services import queue_store
from relayq.services.audit import record_event
from relayq.services.channels import get_channel


logger = logging.getLogger(__name__)

OPT_OUT_METHODS = ("keyword", "admin", "user")


@dataclass(frozen=True)
class StopOutcome:
    record: OptOutRecord
    cancelled_entries: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _canonical(destination: str, channel: str) -> str:
    # Lookups tolerate unnormalizable input so a bad string reads as "not opted out" instead of raising.
    try:
        return get_channel(channel).normalize(destination)
    except InvalidDestinationError:
        return (destination or "").strip()


async def get_opt_out(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    channel: str = "sms",
) -> OptOutRecord | None:
    result = await session.execute(
        select(OptOutRecord).where(
            tenant_channel_predicate(OptOutRecord, tenant_id, channel),
            OptOutRecord.destination == _canonical(destination, channel),
        )
    )
    return result.scalar_one_or_none()


async def is_opted_out(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    channel: str = "sms",
) -> bool:
    # Presence is authoritative; absence only means "may send".
    record = await get_opt_out(session=session, tenant_id=tenant_id, destination=destination, channel=channel)
    return record is not None


async def add_opt_out(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    method: str,
    context: dict[str, Any] | None = None,
    channel: str = "sms",
    actor_id: str | None = None,
) -> OptOutRecord:
    # Idempotent upsert: the latest method and timestamp win.
    if method not in OPT_OUT_METHODS:
        raise ValueError(f"Unsupported opt-out method: {method}")
    canonical = get_channel(channel).normalize(destination)
    now = _utc_now()
    record = await get_opt_out(session=session, tenant_id=tenant_id, destination=canonical, channel=channel)
    if record is None:
        record = OptOutRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            channel=channel,
            destination=canonical,
            method=method,
            context_json=context,
            recorded_at=now,
        )
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            record = await get_opt_out(session=session, tenant_id=tenant_id, destination=canonical, channel=channel)
            if record is None:
                raise
            record.method = method
            record.context_json = context
            record.recorded_at = now
            await session.commit()
    else:
        record.method = method
        record.context_json = context
        record.recorded_at = now
        await session.commit()

    logger.info(
        "opt_out_recorded tenant_id=%s channel=%s destination=%s method=%s",
        tenant_id,
        channel,
        mask_destination(canonical),
        method,
    )
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="recipient" if method == "keyword" else "api",
        actor_id=actor_id,
        event_type="optout.recorded",
        outcome="success",
        resource_type="opt_out",
        resource_id=record.id,
        metadata={"channel": channel, "method": method},
        commit=True,
    )
    return record


async def remove_opt_out(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    channel: str = "sms",
    actor_type: str = "api",
    actor_id: str | None = None,
) -> bool:
    canonical = _canonical(destination, channel)
    result = await session.execute(
        delete(OptOutRecord).where(
            tenant_channel_predicate(OptOutRecord, tenant_id, channel),
            OptOutRecord.destination == canonical,
        )
    )
    await session.commit()
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.info(
            "opt_out_removed tenant_id=%s channel=%s destination=%s",
            tenant_id,
            channel,
            mask_destination(canonical),
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type="optout.removed",
            outcome="success",
            resource_type="opt_out",
            metadata={"channel": channel},
            commit=True,
        )
    return removed


async def handle_stop_keyword(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    original_message: str,
    channel: str = "sms",
) -> StopOutcome:
    """Record a keyword opt-out and cancel everything still queued for the recipient.

    Entries in ``pending`` or ``scheduled`` become ``skipped`` with reason
    ``recipient_opted_out``. Entries already claimed by a processor are left to
    its per-entry opt-out check.
    """
    record = await add_opt_out(
        session=session,
        tenant_id=tenant_id,
        destination=destination,
        method="keyword",
        context={"keyword": (original_message or "").strip().upper()[:32]},
        channel=channel,
    )
    cancelled = await queue_store.cancel_pending_for_destination(
        session=session,
        tenant_id=tenant_id,
        channel=channel,
        destination=record.destination,
        reason=SKIP_RECIPIENT_OPTED_OUT,
    )
    if cancelled:
        logger.info(
            "opt_out_entries_cancelled tenant_id=%s channel=%s destination=%s count=%s",
            tenant_id,
            channel,
            mask_destination(record.destination),
            cancelled,
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type="system",
            event_type="optout.entries_cancelled",
            outcome="success",
            resource_type="opt_out",
            resource_id=record.id,
            metadata={"channel": channel, "cancelled": cancelled},
            commit=True,
        )
    return StopOutcome(record=record, cancelled_entries=cancelled)


async def handle_start_keyword(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    channel: str = "sms",
) -> bool:
    # Re-opt-in only lifts the suppression; previously skipped entries stay skipped.
    return await remove_opt_out(
        session=session,
        tenant_id=tenant_id,
        destination=destination,
        channel=channel,
        actor_type="recipient",
    )
