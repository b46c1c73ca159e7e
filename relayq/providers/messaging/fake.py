from __future__ import annotations

from uuid import uuid4

from relayq.providers.messaging.base import SendRequest, SendResult


class FakeProvider:
    """Deterministic in-memory provider for local development and tests."""

    name = "fake"

    def __init__(
        self,
        *,
        fail_destinations: set[str] | None = None,
        error_code: str = "fake_rejected",
        retryable: bool = True,
    ) -> None:
        self._fail_destinations = set(fail_destinations or ())
        self._error_code = error_code
        self._retryable = retryable
        # Accepted requests and their ids in send order so tests can assert on dispatch.
        self.sent: list[SendRequest] = []
        self.message_ids: list[str] = []
        self.calls = 0

    async def send(self, request: SendRequest) -> SendResult:
        self.calls += 1
        if request.destination in self._fail_destinations:
            return SendResult(
                success=False,
                error="fake provider rejected destination",
                error_code=self._error_code,
                retryable=self._retryable,
            )
        # Ids must stay unique across provider instances; delivery callbacks match on them.
        message_id = f"fake-{request.channel}-{uuid4().hex}"
        self.sent.append(request)
        self.message_ids.append(message_id)
        return SendResult(success=True, provider_message_id=message_id)
