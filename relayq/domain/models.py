from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Normalize every timestamp to aware UTC so comparisons behave the same on Postgres and SQLite.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (SQLite dev/test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class QueueEntry(Base):
    __tablename__ = "queue_entries"
    __table_args__ = (
        # Claim scans: due scheduled rows per tenant/channel, oldest first.
        Index("ix_queue_entries_claim", "tenant_id", "channel", "status", "scheduled_at"),
        Index("ix_queue_entries_destination", "tenant_id", "channel", "destination"),
        Index(
            "uq_queue_entries_provider_message_id",
            "tenant_id",
            "channel",
            "provider_message_id",
            unique=True,
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String, default="sms")
    # Canonical recipient (E.164 phone or lower-cased email) for exact-match opt-out lookups.
    destination: Mapped[str] = mapped_column(String)
    recipient_type: Mapped[str] = mapped_column(String, default="customer")
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String, nullable=True)
    notification_type: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    # Computed once at insert so downstream code never re-derives billing units.
    content_length: Mapped[int] = mapped_column(Integer)
    segment_count: Mapped[int] = mapped_column(Integer)
    encoding: Mapped[str] = mapped_column(String, default="GSM-7")
    status: Mapped[str] = mapped_column(String, default="pending")
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Run identifier of the processor holding the row; set only while processing.
    claim_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    # Stale-claim detection keys off this column, so every transition must bump it.
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class TenantChannelSettings(Base):
    __tablename__ = "tenant_channel_settings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel", name="uq_tenant_channel_settings_scope"),
        Index("ix_tenant_channel_settings_sender", "channel", "sender_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String, default="sms")
    # Master kill switch; new tenants start disabled.
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    # Opaque reference into the secret store; credentials never live in this table.
    provider_credentials_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    # Tenant-owned sending number/address; inbound callbacks are routed by it.
    sender_id: Mapped[str | None] = mapped_column(String, nullable=True)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quiet_hours_start: Mapped[str] = mapped_column(String, default="21:00")
    quiet_hours_end: Mapped[str] = mapped_column(String, default="09:00")
    quiet_hours_timezone: Mapped[str] = mapped_column(String, default="UTC")
    rate_limit_per_second: Mapped[int] = mapped_column(Integer, default=1)
    daily_limit: Mapped[int] = mapped_column(Integer, default=1000)
    health_status: Mapped[str] = mapped_column(String, default="unknown")
    last_health_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class OptOutRecord(Base):
    __tablename__ = "opt_out_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel", "destination", name="uq_opt_out_records_scope"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String, default="sms")
    destination: Mapped[str] = mapped_column(String)
    # keyword | admin | user
    method: Mapped[str] = mapped_column(String)
    context_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class Template(Base):
    __tablename__ = "templates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel", "notification_type", name="uq_templates_scope"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String, default="sms")
    notification_type: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    content_length: Mapped[int] = mapped_column(Integer, default=0)
    segment_count: Mapped[int] = mapped_column(Integer, default=1)
    available_variables: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    # Allow null tenant_id for unrouted webhook traffic.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
