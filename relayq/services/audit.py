from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.logging import mask_destination
from relayq.domain.models import AuditEvent
from relayq.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Credentials and rendered message text never reach audit rows.
_REDACT_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "body", "content")
# Recipients stay correlatable but are partially masked.
_RECIPIENT_KEYS = frozenset({"destination", "recipient", "from", "to", "phone", "email"})


def _scrub(key: str, value: Any) -> Any:
    lowered = key.lower()
    if any(fragment in lowered for fragment in _REDACT_FRAGMENTS):
        return REDACTED
    if lowered in _RECIPIENT_KEYS and isinstance(value, str):
        return mask_destination(value)
    return sanitize_metadata(value)


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` that is safe to persist in an audit row."""
    if isinstance(value, dict):
        return {str(key): _scrub(str(key), item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        await session.commit()


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    """Append a compliance audit row (opt-outs, webhook outcomes, worker failures).

    Without ``session`` the row is written in its own short transaction so it
    survives a rollback of the caller's work. With a session the row joins the
    caller's transaction and is committed only when ``commit`` is true.

    Write failures are logged and swallowed when ``best_effort`` is true so an
    audit outage never blocks an opt-out or a delivery update; otherwise they
    propagate.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    owns_session = session is None
    target = session if session is not None else SessionLocal()
    should_commit = owns_session or bool(commit)
    try:
        await _persist(target, event, commit=should_commit)
    except SQLAlchemyError as exc:
        if should_commit:
            await target.rollback()
        if not best_effort:
            logger.error("audit_event_write_failed event_type=%s tenant_id=%s", event_type, tenant_id)
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=exc
        )
    finally:
        if owns_session:
            await target.close()
