"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_BIGINT_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "queue_entries",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="sms"),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("recipient_type", sa.String(), nullable=False, server_default="customer"),
        sa.Column("recipient_id", sa.String(), nullable=True),
        sa.Column("recipient_name", sa.String(), nullable=True),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_length", sa.Integer(), nullable=False),
        sa.Column("segment_count", sa.Integer(), nullable=False),
        sa.Column("encoding", sa.String(), nullable=False, server_default="GSM-7"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_id", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_message_id", sa.String(), nullable=True),
        sa.Column("skip_reason", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_queue_entries_tenant_id", "queue_entries", ["tenant_id"])
    op.create_index(
        "ix_queue_entries_claim",
        "queue_entries",
        ["tenant_id", "channel", "status", "scheduled_at"],
    )
    op.create_index("ix_queue_entries_destination", "queue_entries", ["tenant_id", "channel", "destination"])
    op.create_index(
        "uq_queue_entries_provider_message_id",
        "queue_entries",
        ["tenant_id", "channel", "provider_message_id"],
        unique=True,
    )

    op.create_table(
        "tenant_channel_settings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="sms"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("provider_credentials_ref", sa.String(), nullable=True),
        sa.Column("sender_id", sa.String(), nullable=True),
        sa.Column("quiet_hours_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quiet_hours_start", sa.String(), nullable=False, server_default="21:00"),
        sa.Column("quiet_hours_end", sa.String(), nullable=False, server_default="09:00"),
        sa.Column("quiet_hours_timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("rate_limit_per_second", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("daily_limit", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("health_status", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("last_health_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "channel", name="uq_tenant_channel_settings_scope"),
    )
    op.create_index("ix_tenant_channel_settings_tenant_id", "tenant_channel_settings", ["tenant_id"])
    op.create_index("ix_tenant_channel_settings_sender", "tenant_channel_settings", ["channel", "sender_id"])

    op.create_table(
        "opt_out_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="sms"),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("context_json", _JSON, nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "channel", "destination", name="uq_opt_out_records_scope"),
    )
    op.create_index("ix_opt_out_records_tenant_id", "opt_out_records", ["tenant_id"])

    op.create_table(
        "templates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="sms"),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("segment_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("available_variables", _JSON, nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "channel", "notification_type", name="uq_templates_scope"),
    )
    op.create_index("ix_templates_tenant_id", "templates", ["tenant_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", _BIGINT_ID, primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        # Allow null tenant_id for unrouted webhook traffic.
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_templates_tenant_id", table_name="templates")
    op.drop_table("templates")
    op.drop_index("ix_opt_out_records_tenant_id", table_name="opt_out_records")
    op.drop_table("opt_out_records")
    op.drop_index("ix_tenant_channel_settings_sender", table_name="tenant_channel_settings")
    op.drop_index("ix_tenant_channel_settings_tenant_id", table_name="tenant_channel_settings")
    op.drop_table("tenant_channel_settings")
    op.drop_index("uq_queue_entries_provider_message_id", table_name="queue_entries")
    op.drop_index("ix_queue_entries_destination", table_name="queue_entries")
    op.drop_index("ix_queue_entries_claim", table_name="queue_entries")
    op.drop_index("ix_queue_entries_tenant_id", table_name="queue_entries")
    op.drop_table("queue_entries")
