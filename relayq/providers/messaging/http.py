from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from relayq.core.config import get_settings
from relayq.core.errors import ProviderError
from relayq.providers.messaging.base import SendResult, is_retryable_status
from relayq.services.resilience import CircuitBreaker, breaker_for, retry_async
from relayq.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


def _retryable(exc: Exception) -> bool:
    # Only transport failures are retried inline; HTTP error statuses are returned to the processor.
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError))


class HttpProviderBase:
    """Shared httpx plumbing for provider gateways: pooling, retry, breaker, telemetry."""

    name = "http"
    integration = "messaging.http"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._owns_client = client is None
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = await breaker_for(self.integration)
        return self._breaker

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        # Raises IntegrationUnavailableError when the breaker is open and ProviderError on transport failure.
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            return await client.post(url, **kwargs)

        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ProviderError(
                f"{self.integration} request failed: {type(exc).__name__}",
                error_code="transport_error",
                retryable=True,
            ) from exc

        if response.status_code >= 500:
            await breaker.record_failure()
        elif response.status_code < 400:
            await breaker.record_success()
        record_external_call(
            integration=self.integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        return response

    def _error_result(self, response: httpx.Response, *, error_code: str | None, message: str | None) -> SendResult:
        retryable = is_retryable_status(response.status_code)
        increment_counter(f"provider_rejections_total.{self.integration}")
        logger.warning(
            "provider_send_rejected integration=%s status=%s error_code=%s retryable=%s",
            self.integration,
            response.status_code,
            error_code,
            retryable,
        )
        return SendResult(
            success=False,
            error=message or f"{self.integration} error: {response.status_code}",
            error_code=error_code or f"http_{response.status_code}",
            retryable=retryable,
        )


def response_json(response: httpx.Response) -> dict[str, Any]:
    # Providers occasionally return HTML error pages; treat unparseable bodies as empty.
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
