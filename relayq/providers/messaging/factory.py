from __future__ import annotations

from typing import Any

from relayq.core.config import get_settings
from relayq.core.errors import ProviderConfigError
from relayq.providers.messaging.base import MessagingProvider
from relayq.providers.messaging.fake import FakeProvider
from relayq.providers.messaging.resend import ResendEmailProvider
from relayq.providers.messaging.twilio import TwilioSmsProvider


def get_messaging_provider(channel: str, tenant_settings: Any | None = None) -> MessagingProvider:
    # A tenant-level provider override wins over the deployment default for the channel.
    settings = get_settings()
    default = settings.email_provider if channel == "email" else settings.sms_provider
    provider = (getattr(tenant_settings, "provider", None) or default or "fake").lower()

    if provider == "fake":
        return FakeProvider()
    if provider == "twilio" and channel == "sms":
        return TwilioSmsProvider()
    if provider == "resend" and channel == "email":
        return ResendEmailProvider()

    raise ProviderConfigError(f"Unsupported {channel} provider: {provider}")
