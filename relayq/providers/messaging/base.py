from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SendRequest:
    tenant_id: str
    channel: str
    destination: str
    content: str
    sender_id: str | None = None
    subject: str | None = None
    # Stable per-entry token for providers that deduplicate retried sends.
    idempotency_key: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    # Provider verdict on whether a later attempt could succeed.
    retryable: bool = True


class MessagingProvider(Protocol):
    name: str

    async def send(self, request: SendRequest) -> SendResult:
        ...


def is_retryable_status(status_code: int) -> bool:
    # Timeouts, throttling and server errors are transient; other 4xx are permanent rejections.
    return status_code >= 500 or status_code in {408, 429}
