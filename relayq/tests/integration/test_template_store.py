from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from relayq.core.errors import TemplateNotFoundError
from relayq.domain.models import AuditEvent
from relayq.persistence.db import SessionLocal
from relayq.services import queue_store, templates
from relayq.services.audit import record_event


def _tenant_id() -> str:
    return f"t-tpl-{uuid4().hex[:8]}"


@pytest.mark.asyncio
async def test_seed_defaults_then_customize_one() -> None:
    tenant_id = _tenant_id()
    async with SessionLocal() as session:
        seeded = await templates.seed_default_templates(session=session, tenant_id=tenant_id)
        assert len(seeded) == len(templates.DEFAULT_TEMPLATES["sms"])
        assert all(row.is_default for row in seeded)

        custom = await templates.upsert_template(
            session=session,
            tenant_id=tenant_id,
            notification_type="order_shipped",
            content="{{brandName}} order {{orderNumber}} is on its way",
        )
        seeded_row = next(row for row in seeded if row.notification_type == "order_shipped")
        assert custom.id == seeded_row.id
        assert custom.is_default is False

        fetched = await templates.get_template(session=session, tenant_id=tenant_id, template_id=custom.id)
        assert fetched is not None
        assert fetched.content.endswith("is on its way")
        assert await templates.get_template(session=session, tenant_id=_tenant_id(), template_id=custom.id) is None

        rendered = await templates.render_template(
            session=session,
            tenant_id=tenant_id,
            notification_type="order_shipped",
            variables={"brandName": "Acme", "orderNumber": "9"},
        )
        await session.commit()
    assert rendered.content == "Acme order 9 is on its way"
    assert rendered.segment_count == 1


@pytest.mark.asyncio
async def test_get_or_create_default_template() -> None:
    tenant_id = _tenant_id()
    async with SessionLocal() as session:
        created = await templates.get_or_create_default_template(
            session=session, tenant_id=tenant_id, notification_type="security_alert"
        )
        again = await templates.get_or_create_default_template(
            session=session, tenant_id=tenant_id, notification_type="security_alert"
        )
        unknown = await templates.get_or_create_default_template(
            session=session, tenant_id=tenant_id, notification_type="nope"
        )
        listed = await templates.list_templates(session=session, tenant_id=tenant_id)
        await session.commit()

    assert created is not None and again is not None
    assert created.id == again.id
    assert created.available_variables == ["brandName", "alertMessage"]
    assert unknown is None
    assert [row.notification_type for row in listed] == ["security_alert"]


@pytest.mark.asyncio
async def test_render_unknown_type_raises() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TemplateNotFoundError):
            await templates.render_template(
                session=session, tenant_id=_tenant_id(), notification_type="unknown", variables=None
            )
        await session.commit()


@pytest.mark.asyncio
async def test_lookup_by_provider_id_and_daily_limit() -> None:
    tenant_id = _tenant_id()
    async with SessionLocal() as session:
        entry = await queue_store.create_entry(
            session=session,
            tenant_id=tenant_id,
            destination="+15551234567",
            notification_type="order_shipped",
            content="Shipped",
            scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        await queue_store.claim_due(session=session, tenant_id=tenant_id, channel="sms", run_id="r", limit=1)
        await queue_store.mark_sent(
            session=session,
            tenant_id=tenant_id,
            channel="sms",
            entry_id=entry.id,
            run_id="r",
            provider_message_id="SM-77",
        )

        found = await queue_store.get_entry_by_provider_message_id(
            session=session, tenant_id=tenant_id, channel="sms", provider_message_id="SM-77"
        )
        assert found is not None and found.id == entry.id
        assert await queue_store.is_daily_limit_exceeded(
            session=session, tenant_id=tenant_id, channel="sms", daily_limit=1
        )
        assert not await queue_store.is_daily_limit_exceeded(
            session=session, tenant_id=tenant_id, channel="sms", daily_limit=2
        )
        # Sends older than the rolling 24h window no longer count.
        tomorrow = datetime.now(timezone.utc) + timedelta(hours=25)
        assert await queue_store.daily_count(session=session, tenant_id=tenant_id, channel="sms", now=tomorrow) == 0
        await session.commit()


@pytest.mark.asyncio
async def test_audit_metadata_is_sanitized() -> None:
    tenant_id = _tenant_id()
    await record_event(
        tenant_id=tenant_id,
        actor_type="api",
        event_type="optout.recorded",
        outcome="success",
        metadata={"channel": "sms", "content": "Your code is 123456", "nested": {"api_token": "abc"}},
    )
    async with SessionLocal() as session:
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.tenant_id == tenant_id))
        ).scalar_one()
        await session.commit()
    assert event.metadata_json == {
        "channel": "sms",
        "content": "[REDACTED]",
        "nested": {"api_token": "[REDACTED]"},
    }
