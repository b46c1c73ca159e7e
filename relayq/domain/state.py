from __future__ import annotations

from typing import Literal


QueueStatus = Literal["pending", "scheduled", "processing", "sent", "delivered", "failed", "skipped"]

PENDING = "pending"
SCHEDULED = "scheduled"
PROCESSING = "processing"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"
SKIPPED = "skipped"

ALL_STATUSES: tuple[str, ...] = (PENDING, SCHEDULED, PROCESSING, SENT, DELIVERED, FAILED, SKIPPED)
# Entries a STOP keyword can still cancel before dispatch.
CANCELLABLE_STATUSES: tuple[str, ...] = (PENDING, SCHEDULED)
# Statuses counted against the rolling daily send limit.
SENT_STATUSES: tuple[str, ...] = (SENT, DELIVERED)

# Allowed transitions; failed -> scheduled only while attempts < max_attempts.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({SCHEDULED, SKIPPED}),
    SCHEDULED: frozenset({PROCESSING, SKIPPED}),
    PROCESSING: frozenset({SENT, FAILED, SKIPPED, SCHEDULED}),
    SENT: frozenset({DELIVERED, FAILED}),
    FAILED: frozenset({SCHEDULED}),
    DELIVERED: frozenset(),
    SKIPPED: frozenset(),
}

SKIP_RECIPIENT_OPTED_OUT = "recipient_opted_out"
SKIP_TENANT_DISABLED = "tenant_disabled"
SKIP_INVALID_DESTINATION = "invalid_destination"
SKIP_QUIET_HOURS = "quiet_hours"


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: str, *, attempts: int = 0, max_attempts: int = 0) -> bool:
    if status in (DELIVERED, SKIPPED):
        return True
    if status == FAILED:
        return attempts >= max_attempts
    return False


def sources_for(target: str) -> tuple[str, ...]:
    """Statuses an entry may move to ``target`` from; store updates filter on these."""
    return tuple(status for status in ALL_STATUSES if can_transition(status, target))
