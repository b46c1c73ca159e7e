from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.errors import InvalidDestinationError
from relayq.core.logging import mask_destination
from relayq.services import queue_store
from relayq.services.audit import record_event
from relayq.services.channels import get_channel
from relayq.services.compliance import is_opt_in_keyword, is_opt_out_keyword
from relayq.services.opt_outs import handle_start_keyword, handle_stop_keyword
from relayq.services.settings_store import SettingsStore, SqlSettingsStore


logger = logging.getLogger(__name__)

DELIVERED_STATUSES = frozenset({"delivered"})
FAILED_STATUSES = frozenset({"failed", "undelivered", "bounced"})


@dataclass(frozen=True)
class StatusCallback:
    provider_message_id: str
    status: str
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class StatusOutcome:
    applied: bool
    action: str
    reason: str | None = None


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    recipient: str
    body: str


@dataclass(frozen=True)
class InboundOutcome:
    action: str
    tenant_id: str | None = None
    cancelled_entries: int = 0


def normalize_provider_status(status: str | None) -> str:
    # Email providers namespace events ("email.delivered"); SMS providers send bare statuses.
    value = (status or "").strip().lower()
    if "." in value:
        value = value.rsplit(".", 1)[1]
    return value


async def apply_status_callback(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    callback: StatusCallback,
    request_id: str | None = None,
) -> StatusOutcome:
    """Reconcile one provider delivery callback against the queue.

    Transitions are conditional on the entry still being ``sent``, so late or
    duplicate callbacks cannot resurrect an older state. Intermediate statuses
    and callbacks that match nothing are recorded and ignored.
    """
    status = normalize_provider_status(callback.status)
    if status in DELIVERED_STATUSES:
        applied = await queue_store.mark_delivered(
            session=session,
            tenant_id=tenant_id,
            channel=channel,
            provider_message_id=callback.provider_message_id,
        )
        action = "delivered"
    elif status in FAILED_STATUSES:
        applied = await queue_store.mark_delivery_failed(
            session=session,
            tenant_id=tenant_id,
            channel=channel,
            provider_message_id=callback.provider_message_id,
            error=callback.error_message or f"provider reported {status}",
            error_code=callback.error_code,
        )
        action = "failed"
    else:
        return StatusOutcome(applied=False, action="ignored", reason="non_terminal_status")

    outcome = StatusOutcome(
        applied=applied,
        action=action if applied else "ignored",
        reason=None if applied else "unknown_or_stale",
    )
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="provider",
        event_type="webhook.status_applied" if applied else "webhook.status_ignored",
        outcome="success" if applied else "ignored",
        resource_type="queue_entry",
        resource_id=callback.provider_message_id,
        request_id=request_id,
        metadata={"channel": channel, "status": status, "provider_error_code": callback.error_code},
        commit=True,
    )
    logger.info(
        "webhook_status_callback tenant_id=%s channel=%s provider_message_id=%s status=%s applied=%s",
        tenant_id,
        channel,
        callback.provider_message_id,
        status,
        applied,
    )
    return outcome


async def handle_inbound_message(
    *,
    session: AsyncSession,
    channel: str,
    message: InboundMessage,
    settings_store: SettingsStore | None = None,
    request_id: str | None = None,
) -> InboundOutcome:
    # Route a recipient reply to the tenant owning the receiving sender, then apply STOP/START.
    strategy = get_channel(channel)
    if not strategy.supports_keywords:
        return InboundOutcome(action="ignored")
    is_stop = is_opt_out_keyword(message.body)
    is_start = is_opt_in_keyword(message.body)
    if not is_stop and not is_start:
        return InboundOutcome(action="ignored")

    store = settings_store or SqlSettingsStore(session)
    tenant_id = await store.find_tenant_by_sender(strategy.name, message.recipient)
    if tenant_id is None:
        logger.warning(
            "webhook_inbound_unrouted channel=%s recipient=%s",
            strategy.name,
            mask_destination(message.recipient),
        )
        await record_event(
            session=session,
            tenant_id=None,
            actor_type="provider",
            event_type="webhook.inbound_unrouted",
            outcome="ignored",
            request_id=request_id,
            metadata={"channel": strategy.name, "keyword": "stop" if is_stop else "start"},
            commit=True,
        )
        return InboundOutcome(action="unrouted")

    try:
        if is_stop:
            stop = await handle_stop_keyword(
                session=session,
                tenant_id=tenant_id,
                destination=message.sender,
                original_message=message.body,
                channel=strategy.name,
            )
            return InboundOutcome(action="opted_out", tenant_id=tenant_id, cancelled_entries=stop.cancelled_entries)
        await handle_start_keyword(
            session=session,
            tenant_id=tenant_id,
            destination=message.sender,
            channel=strategy.name,
        )
        return InboundOutcome(action="opted_in", tenant_id=tenant_id)
    except InvalidDestinationError:
        logger.warning("webhook_inbound_invalid_sender tenant_id=%s channel=%s", tenant_id, strategy.name)
        return InboundOutcome(action="invalid_sender", tenant_id=tenant_id)
