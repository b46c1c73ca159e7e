from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from relayq.core.config import get_settings
from relayq.core.errors import IntegrationUnavailableError, ProviderConfigError, ProviderError
from relayq.providers.messaging.base import SendRequest, is_retryable_status
from relayq.providers.messaging.factory import get_messaging_provider
from relayq.providers.messaging.fake import FakeProvider
from relayq.providers.messaging.resend import ResendEmailProvider
from relayq.providers.messaging.twilio import TwilioSmsProvider
from relayq.services.resilience import CircuitBreaker, CircuitBreakerConfig


def _sms_request(**overrides) -> SendRequest:
    values = dict(
        tenant_id="t-providers",
        channel="sms",
        destination="+15551234567",
        content="Acme: your code is 123456",
        sender_id="+15550000000",
        idempotency_key="entry-1",
    )
    values.update(overrides)
    return SendRequest(**values)


def _email_request(**overrides) -> SendRequest:
    values = dict(
        tenant_id="t-providers",
        channel="email",
        destination="jane@example.com",
        content="Your order shipped",
        sender_id="orders@acme.example.com",
        subject="Order shipped",
        idempotency_key="entry-2",
    )
    values.update(overrides)
    return SendRequest(**values)


def _breaker(name: str = "messaging.test") -> CircuitBreaker:
    return CircuitBreaker(
        name,
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )


@pytest.fixture
def provider_settings(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "twilio_account_sid", "AC123")
    monkeypatch.setattr(settings, "twilio_auth_token", "token")
    monkeypatch.setattr(settings, "twilio_status_callback_base_url", "https://relay.example.com/")
    monkeypatch.setattr(settings, "resend_api_key", "re_test")
    monkeypatch.setattr(settings, "ext_retry_max_attempts", 1)
    return settings


def test_retryable_statuses() -> None:
    assert is_retryable_status(500)
    assert is_retryable_status(503)
    assert is_retryable_status(429)
    assert is_retryable_status(408)
    assert not is_retryable_status(400)
    assert not is_retryable_status(401)


@pytest.mark.asyncio
async def test_twilio_send_posts_form_and_returns_sid(provider_settings) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = TwilioSmsProvider(client=client, breaker=_breaker())
    result = await provider.send(_sms_request())
    await client.aclose()

    assert result.success is True
    assert result.provider_message_id == "SM123"
    assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert seen["auth"].startswith("Basic ")
    assert seen["form"]["To"] == ["+15551234567"]
    assert seen["form"]["From"] == ["+15550000000"]
    assert seen["form"]["StatusCallback"] == ["https://relay.example.com/v1/webhooks/sms/t-providers/status"]


@pytest.mark.asyncio
async def test_twilio_client_error_is_permanent(provider_settings) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    result = await TwilioSmsProvider(client=client, breaker=_breaker()).send(_sms_request())
    await client.aclose()

    assert result.success is False
    assert result.retryable is False
    assert result.error_code == "21211"
    assert "Invalid" in (result.error or "")


@pytest.mark.asyncio
async def test_twilio_server_error_is_retryable_and_trips_breaker(provider_settings) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="<html>unavailable</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = TwilioSmsProvider(client=client, breaker=_breaker("messaging.twilio.trip"))
    result = await provider.send(_sms_request())

    assert result.success is False
    assert result.retryable is True
    assert result.error_code == "http_503"
    with pytest.raises(IntegrationUnavailableError):
        await provider.send(_sms_request())
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_failure_raises_retryable_provider_error(provider_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as excinfo:
        await TwilioSmsProvider(client=client, breaker=_breaker()).send(_sms_request())
    await client.aclose()

    assert excinfo.value.retryable is True
    assert excinfo.value.error_code == "transport_error"


@pytest.mark.asyncio
async def test_twilio_requires_credentials_and_sender(provider_settings, monkeypatch) -> None:
    provider = TwilioSmsProvider(breaker=_breaker())
    with pytest.raises(ProviderConfigError):
        await provider.send(_sms_request(sender_id=None))
    monkeypatch.setattr(provider_settings, "twilio_auth_token", None)
    with pytest.raises(ProviderConfigError):
        await provider.send(_sms_request())


@pytest.mark.asyncio
async def test_resend_send_uses_bearer_and_idempotency_key(provider_settings) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "em_123"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    result = await ResendEmailProvider(client=client, breaker=_breaker()).send(_email_request())
    await client.aclose()

    assert result.success is True
    assert result.provider_message_id == "em_123"
    assert seen["headers"]["authorization"] == "Bearer re_test"
    assert seen["headers"]["idempotency-key"] == "entry-2"
    assert seen["body"]["to"] == ["jane@example.com"]
    assert seen["body"]["subject"] == "Order shipped"


@pytest.mark.asyncio
async def test_resend_rate_limit_is_retryable(provider_settings) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"name": "rate_limit_exceeded", "message": "Too many requests"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    result = await ResendEmailProvider(client=client, breaker=_breaker()).send(_email_request())
    await client.aclose()

    assert result.success is False
    assert result.retryable is True
    assert result.error_code == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_fake_provider_records_sends_and_failures() -> None:
    provider = FakeProvider(fail_destinations={"+15559999999"}, retryable=False)
    ok = await provider.send(_sms_request())
    failed = await provider.send(_sms_request(destination="+15559999999"))

    assert ok.success is True
    assert ok.provider_message_id is not None and ok.provider_message_id.startswith("fake-sms-")
    assert provider.message_ids == [ok.provider_message_id]
    assert failed.success is False
    assert failed.retryable is False
    assert provider.calls == 2
    assert [request.destination for request in provider.sent] == ["+15551234567"]


def test_factory_prefers_tenant_override(monkeypatch) -> None:
    class _TenantSettings:
        provider = "twilio"

    monkeypatch.setattr(get_settings(), "sms_provider", "fake")
    assert isinstance(get_messaging_provider("sms"), FakeProvider)
    assert isinstance(get_messaging_provider("sms", _TenantSettings()), TwilioSmsProvider)
    assert isinstance(get_messaging_provider("email"), FakeProvider)
    with pytest.raises(ProviderConfigError):
        get_messaging_provider("email", _TenantSettings())


@pytest.mark.asyncio
async def test_fake_provider_ids_are_unique_across_instances() -> None:
    # The factory builds a new provider per pass; callbacks must never match two sends.
    first = await FakeProvider().send(_sms_request())
    second = await FakeProvider().send(_sms_request())
    assert first.provider_message_id != second.provider_message_id
