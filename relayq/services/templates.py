from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.errors import TemplateNotFoundError
from relayq.domain.models import Template
from relayq.persistence.guards import tenant_channel_predicate
from relayq.services.channels import get_channel


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class DefaultTemplate:
    content: str
    available_variables: tuple[str, ...]


@dataclass(frozen=True)
class VariableCheck:
    valid: bool
    missing: list[str]


@dataclass(frozen=True)
class RenderedTemplate:
    content: str
    length: int
    segment_count: int
    encoding: str


# Built-in bodies used until a tenant customizes a notification type.
DEFAULT_TEMPLATES: dict[str, dict[str, DefaultTemplate]] = {
    "sms": {
        "order_shipped": DefaultTemplate(
            "{{brandName}}: Your order #{{orderNumber}} has shipped! Track at: {{trackingUrl}} Reply STOP to opt out.",
            ("brandName", "orderNumber", "trackingUrl"),
        ),
        "delivery_notification": DefaultTemplate(
            "{{brandName}}: Your order #{{orderNumber}} was delivered! Thank you for your purchase. Reply STOP to opt out.",
            ("brandName", "orderNumber"),
        ),
        "payment_available": DefaultTemplate(
            "{{brandName}}: {{amount}} is available for payout! Log in to claim: {{portalUrl}} Reply STOP to opt out.",
            ("brandName", "amount", "portalUrl"),
        ),
        "payout_sent": DefaultTemplate(
            "{{brandName}}: Your payout of {{amount}} has been sent! It should arrive in 2-3 business days. Reply STOP to opt out.",
            ("brandName", "amount"),
        ),
        "action_required": DefaultTemplate(
            "{{brandName}}: Action required on your account. Log in: {{portalUrl}} Reply STOP to opt out.",
            ("brandName", "portalUrl"),
        ),
        "verification_code": DefaultTemplate(
            "{{brandName}}: Your verification code is {{code}}. It expires in 10 minutes.",
            ("brandName", "code"),
        ),
        "security_alert": DefaultTemplate(
            "{{brandName}}: Security alert - {{alertMessage}}. If this wasn't you, contact support immediately.",
            ("brandName", "alertMessage"),
        ),
    },
    "email": {
        "order_shipped": DefaultTemplate(
            "Your {{brandName}} order #{{orderNumber}} has shipped. Track it here: {{trackingUrl}}",
            ("brandName", "orderNumber", "trackingUrl"),
        ),
        "delivery_notification": DefaultTemplate(
            "Your {{brandName}} order #{{orderNumber}} was delivered. Thank you for your purchase.",
            ("brandName", "orderNumber"),
        ),
        "payment_available": DefaultTemplate(
            "{{amount}} is available for payout from {{brandName}}. Log in to claim it: {{portalUrl}}",
            ("brandName", "amount", "portalUrl"),
        ),
        "payout_sent": DefaultTemplate(
            "Your {{brandName}} payout of {{amount}} has been sent and should arrive in 2-3 business days.",
            ("brandName", "amount"),
        ),
        "action_required": DefaultTemplate(
            "Action is required on your {{brandName}} account. Log in: {{portalUrl}}",
            ("brandName", "portalUrl"),
        ),
        "verification_code": DefaultTemplate(
            "Your {{brandName}} verification code is {{code}}. It expires in 10 minutes.",
            ("brandName", "code"),
        ),
        "security_alert": DefaultTemplate(
            "{{brandName}} security alert: {{alertMessage}}. If this wasn't you, contact support immediately.",
            ("brandName", "alertMessage"),
        ),
    },
}

# Preview values per notification type; custom variables override them.
SAMPLE_DATA: dict[str, dict[str, str]] = {
    "order_shipped": {
        "brandName": "Acme",
        "orderNumber": "12345",
        "trackingUrl": "https://track.example.com/abc123",
    },
    "delivery_notification": {"brandName": "Acme", "orderNumber": "12345"},
    "payment_available": {
        "brandName": "Acme",
        "amount": "$150.00",
        "portalUrl": "https://portal.example.com",
    },
    "payout_sent": {"brandName": "Acme", "amount": "$150.00"},
    "action_required": {"brandName": "Acme", "portalUrl": "https://portal.example.com"},
    "verification_code": {"brandName": "Acme", "code": "123456"},
    "security_alert": {"brandName": "Acme", "alertMessage": "New login from unknown device"},
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def substitute_variables(content: str, variables: Mapping[str, Any] | None) -> str:
    # Unresolved placeholders stay verbatim so a missing value is visibly wrong.
    values = variables or {}

    def _replace(match: re.Match[str]) -> str:
        value = values.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, content)


def extract_variables(content: str) -> list[str]:
    # First-occurrence order, deduplicated.
    seen: list[str] = []
    for name in _PLACEHOLDER.findall(content):
        if name not in seen:
            seen.append(name)
    return seen


def validate_variables(content: str, variables: Mapping[str, Any] | None) -> VariableCheck:
    values = variables or {}
    missing = [name for name in extract_variables(content) if values.get(name) is None]
    return VariableCheck(valid=not missing, missing=missing)


def get_default_template(notification_type: str, channel: str = "sms") -> DefaultTemplate | None:
    return DEFAULT_TEMPLATES.get(channel, {}).get(notification_type)


def preview_template(
    content: str,
    notification_type: str,
    custom_variables: Mapping[str, Any] | None = None,
    *,
    channel: str = "sms",
) -> RenderedTemplate:
    # Substitute sample data so template authors can check length before saving.
    values: dict[str, Any] = dict(SAMPLE_DATA.get(notification_type, {}))
    values.update(custom_variables or {})
    preview = substitute_variables(content, values)
    info = get_channel(channel).segment(preview)
    return RenderedTemplate(
        content=preview,
        length=info.length,
        segment_count=info.segment_count,
        encoding=info.encoding,
    )


async def get_template(
    *,
    session: AsyncSession,
    tenant_id: str,
    template_id: str,
    channel: str = "sms",
) -> Template | None:
    result = await session.execute(
        select(Template).where(
            tenant_channel_predicate(Template, tenant_id, channel),
            Template.id == template_id,
        )
    )
    return result.scalar_one_or_none()


async def get_template_by_type(
    *,
    session: AsyncSession,
    tenant_id: str,
    notification_type: str,
    channel: str = "sms",
) -> Template | None:
    result = await session.execute(
        select(Template).where(
            tenant_channel_predicate(Template, tenant_id, channel),
            Template.notification_type == notification_type,
        )
    )
    return result.scalar_one_or_none()


async def list_templates(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str = "sms",
) -> list[Template]:
    rows = (
        await session.execute(
            select(Template)
            .where(tenant_channel_predicate(Template, tenant_id, channel))
            .order_by(Template.notification_type.asc())
        )
    ).scalars().all()
    return list(rows)


def _apply_template_fields(
    row: Template,
    *,
    content: str,
    channel: str,
    available_variables: list[str] | None,
    is_default: bool,
    now: datetime,
) -> None:
    info = get_channel(channel).segment(content)
    row.content = content
    row.content_length = info.length
    row.segment_count = info.segment_count
    row.available_variables = list(available_variables) if available_variables is not None else extract_variables(content)
    row.is_default = is_default
    row.updated_at = now


async def upsert_template(
    *,
    session: AsyncSession,
    tenant_id: str,
    notification_type: str,
    content: str,
    channel: str = "sms",
    available_variables: list[str] | None = None,
    is_default: bool = False,
) -> Template:
    # One template per (tenant, channel, notification type); later writes replace the body.
    now = _utc_now()
    existing = await get_template_by_type(
        session=session, tenant_id=tenant_id, notification_type=notification_type, channel=channel
    )
    if existing is not None:
        _apply_template_fields(
            existing,
            content=content,
            channel=channel,
            available_variables=available_variables,
            is_default=is_default,
            now=now,
        )
        await session.commit()
        return existing

    row = Template(
        id=uuid4().hex,
        tenant_id=tenant_id,
        channel=channel,
        notification_type=notification_type,
        created_at=now,
    )
    _apply_template_fields(
        row,
        content=content,
        channel=channel,
        available_variables=available_variables,
        is_default=is_default,
        now=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent writer created the row first; apply this write on top of it.
        await session.rollback()
        existing = await get_template_by_type(
            session=session, tenant_id=tenant_id, notification_type=notification_type, channel=channel
        )
        if existing is None:
            raise
        _apply_template_fields(
            existing,
            content=content,
            channel=channel,
            available_variables=available_variables,
            is_default=is_default,
            now=now,
        )
        await session.commit()
        return existing
    return row


async def delete_template(
    *,
    session: AsyncSession,
    tenant_id: str,
    template_id: str,
    channel: str = "sms",
) -> bool:
    result = await session.execute(
        delete(Template).where(
            tenant_channel_predicate(Template, tenant_id, channel),
            Template.id == template_id,
        )
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def seed_default_templates(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str = "sms",
) -> list[Template]:
    seeded: list[Template] = []
    for notification_type, default in DEFAULT_TEMPLATES.get(channel, {}).items():
        seeded.append(
            await upsert_template(
                session=session,
                tenant_id=tenant_id,
                notification_type=notification_type,
                content=default.content,
                channel=channel,
                available_variables=list(default.available_variables),
                is_default=True,
            )
        )
    logger.info("templates_seeded tenant_id=%s channel=%s count=%s", tenant_id, channel, len(seeded))
    return seeded


async def get_or_create_default_template(
    *,
    session: AsyncSession,
    tenant_id: str,
    notification_type: str,
    channel: str = "sms",
) -> Template | None:
    existing = await get_template_by_type(
        session=session, tenant_id=tenant_id, notification_type=notification_type, channel=channel
    )
    if existing is not None:
        return existing
    default = get_default_template(notification_type, channel)
    if default is None:
        return None
    return await upsert_template(
        session=session,
        tenant_id=tenant_id,
        notification_type=notification_type,
        content=default.content,
        channel=channel,
        available_variables=list(default.available_variables),
        is_default=True,
    )


async def render_template(
    *,
    session: AsyncSession,
    tenant_id: str,
    notification_type: str,
    variables: Mapping[str, Any] | None,
    channel: str = "sms",
) -> RenderedTemplate:
    """Render the tenant's template for ``notification_type``.

    A tenant-customized template wins; otherwise the built-in default for the
    channel is used. Substitution and segmentation happen together so callers
    never compute billing units from raw strings. Raises TemplateNotFoundError
    when neither exists.
    """
    stored = await get_template_by_type(
        session=session, tenant_id=tenant_id, notification_type=notification_type, channel=channel
    )
    if stored is not None:
        body = stored.content
    else:
        default = get_default_template(notification_type, channel)
        if default is None:
            raise TemplateNotFoundError(f"No template for notification type: {notification_type}")
        body = default.content
    content = substitute_variables(body, variables)
    info = get_channel(channel).segment(content)
    return RenderedTemplate(
        content=content,
        length=info.length,
        segment_count=info.segment_count,
        encoding=info.encoding,
    )
