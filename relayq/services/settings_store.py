from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.config import get_settings
from relayq.core.errors import InvalidDestinationError
from relayq.domain.models import TenantChannelSettings
from relayq.persistence.guards import require_tenant_id, tenant_channel_predicate
from relayq.services.channels import get_channel


logger = logging.getLogger(__name__)

HEALTH_UNKNOWN = "unknown"
HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"

_MUTABLE_FIELDS = frozenset(
    {
        "enabled",
        "provider",
        "provider_credentials_ref",
        "sender_id",
        "quiet_hours_enabled",
        "quiet_hours_start",
        "quiet_hours_end",
        "quiet_hours_timezone",
        "rate_limit_per_second",
        "daily_limit",
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SettingsStore(Protocol):
    # Injected into the processor and webhook ingestor so tests can swap in plain objects.
    async def get(self, tenant_id: str, channel: str) -> Any | None:
        ...

    async def list_enabled_tenants(self, channel: str) -> list[str]:
        ...

    async def find_tenant_by_sender(self, channel: str, sender_id: str) -> str | None:
        ...

    async def update_health(self, tenant_id: str, channel: str, status: str) -> None:
        ...


class SqlSettingsStore:
    """Settings store backed by the ``tenant_channel_settings`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str, channel: str) -> TenantChannelSettings | None:
        result = await self._session.execute(
            select(TenantChannelSettings).where(tenant_channel_predicate(TenantChannelSettings, tenant_id, channel))
        )
        return result.scalar_one_or_none()

    async def list_enabled_tenants(self, channel: str) -> list[str]:
        rows = (
            await self._session.execute(
                select(TenantChannelSettings.tenant_id)
                .where(
                    TenantChannelSettings.channel == channel,
                    TenantChannelSettings.enabled.is_(True),
                )
                .order_by(TenantChannelSettings.tenant_id.asc())
            )
        ).scalars().all()
        return list(rows)

    async def find_tenant_by_sender(self, channel: str, sender_id: str) -> str | None:
        # Inbound replies arrive addressed to the tenant's sender, which is how they are routed.
        try:
            canonical = get_channel(channel).normalize(sender_id)
        except InvalidDestinationError:
            canonical = (sender_id or "").strip()
        rows = (
            await self._session.execute(
                select(TenantChannelSettings.tenant_id)
                .where(
                    TenantChannelSettings.channel == channel,
                    TenantChannelSettings.sender_id == canonical,
                )
                .limit(2)
            )
        ).scalars().all()
        if len(rows) > 1:
            # Ambiguous ownership must not leak an opt-out across tenants.
            logger.warning("sender_owned_by_multiple_tenants channel=%s", channel)
            return None
        return rows[0] if rows else None

    async def update_health(self, tenant_id: str, channel: str, status: str) -> None:
        now = _utc_now()
        await self._session.execute(
            update(TenantChannelSettings)
            .where(tenant_channel_predicate(TenantChannelSettings, tenant_id, channel))
            .values(health_status=status, last_health_check_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()


async def upsert_tenant_settings(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str = "sms",
    **fields: Any,
) -> TenantChannelSettings:
    # Create or patch one tenant's channel settings; unknown fields are rejected.
    require_tenant_id(tenant_id)
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown tenant settings fields: {', '.join(sorted(unknown))}")
    strategy = get_channel(channel)
    if fields.get("sender_id"):
        fields["sender_id"] = strategy.normalize(fields["sender_id"])
    now = _utc_now()
    store = SqlSettingsStore(session)
    row = await store.get(tenant_id, strategy.name)
    if row is None:
        app_settings = get_settings()
        row = TenantChannelSettings(
            id=uuid4().hex,
            tenant_id=tenant_id,
            channel=strategy.name,
            enabled=False,
            quiet_hours_enabled=False,
            quiet_hours_start="21:00",
            quiet_hours_end="09:00",
            quiet_hours_timezone="UTC",
            rate_limit_per_second=app_settings.default_rate_limit_per_second,
            daily_limit=app_settings.default_daily_limit,
            health_status=HEALTH_UNKNOWN,
            created_at=now,
            updated_at=now,
        )
        for key, value in fields.items():
            setattr(row, key, value)
        session.add(row)
        try:
            await session.commit()
            return row
        except IntegrityError:
            await session.rollback()
            row = await store.get(tenant_id, strategy.name)
            if row is None:
                raise
    for key, value in fields.items():
        setattr(row, key, value)
    row.updated_at = now
    await session.commit()
    return row
