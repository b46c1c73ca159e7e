from __future__ import annotations


class RelayError(Exception):
    """Base error for relayq."""


class ProviderConfigError(RelayError):
    """Missing or invalid provider configuration."""


class ProviderError(RelayError):
    """Provider gateway request failure."""

    def __init__(self, message: str, *, error_code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retryable = retryable


class IntegrationUnavailableError(RelayError):
    """External integration is short-circuited by its breaker."""


class InvalidDestinationError(RelayError):
    """Recipient identifier cannot be normalized for its channel."""


class TemplateNotFoundError(RelayError):
    """No stored or built-in template for a notification type."""


class TemplateVariablesMissingError(RelayError):
    """Template placeholders without provided values."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing template variables: {', '.join(missing)}")
        self.missing = missing


class WebhookSignatureError(RelayError):
    """Provider callback signature is missing or invalid."""
