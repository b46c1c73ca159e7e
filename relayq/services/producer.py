from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.errors import TemplateVariablesMissingError
from relayq.domain.models import QueueEntry
from relayq.services import queue_store
from relayq.services.channels import get_channel
from relayq.services.templates import extract_variables, render_template, substitute_variables


async def create_entry(
    *,
    session: AsyncSession,
    tenant_id: str,
    destination: str,
    notification_type: str,
    content: str | None = None,
    variables: Mapping[str, Any] | None = None,
    channel: str = "sms",
    recipient_type: str = "customer",
    recipient_id: str | None = None,
    recipient_name: str | None = None,
    scheduled_at: datetime | None = None,
    max_attempts: int | None = None,
) -> QueueEntry:
    """Validate, render and enqueue one outbound message.

    ``content`` is treated as an inline template; when omitted the tenant's
    stored template (or the built-in default) for ``notification_type`` is
    rendered. Invalid destinations and unresolved placeholders are rejected
    here so nothing undeliverable is ever enqueued. Opt-outs are not checked:
    creation is never gated, only sending is.
    """
    strategy = get_channel(channel)
    canonical = strategy.normalize(destination)
    if content is None:
        rendered = await render_template(
            session=session,
            tenant_id=tenant_id,
            notification_type=notification_type,
            variables=variables,
            channel=strategy.name,
        )
        body = rendered.content
    else:
        body = substitute_variables(content, variables)
    missing = extract_variables(body)
    if missing:
        raise TemplateVariablesMissingError(missing)
    return await queue_store.create_entry(
        session=session,
        tenant_id=tenant_id,
        destination=canonical,
        notification_type=notification_type,
        content=body,
        channel=strategy.name,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        recipient_name=recipient_name,
        scheduled_at=scheduled_at,
        max_attempts=max_attempts,
    )
