from __future__ import annotations

from relayq.core.errors import ProviderConfigError
from relayq.providers.messaging.base import SendRequest, SendResult
from relayq.providers.messaging.http import HttpProviderBase, response_json


RESEND_API_URL = "https://api.resend.com/emails"


class ResendEmailProvider(HttpProviderBase):
    name = "resend"
    integration = "messaging.resend"

    async def send(self, request: SendRequest) -> SendResult:
        api_key = self._settings.resend_api_key
        if not api_key:
            raise ProviderConfigError("RESEND_API_KEY is required for Resend email")
        sender = request.sender_id or self._settings.email_from_address
        if not sender:
            raise ProviderConfigError("A sender address is required for Resend email")

        headers = {"Authorization": f"Bearer {api_key}"}
        if request.idempotency_key:
            # Resend deduplicates on this header, which narrows the lost-ack resend window.
            headers["Idempotency-Key"] = request.idempotency_key
        payload = {
            "from": sender,
            "to": [request.destination],
            "subject": request.subject or "Notification",
            "text": request.content,
        }
        response = await self._post(RESEND_API_URL, json=payload, headers=headers)
        body = response_json(response)
        if response.status_code >= 400:
            return self._error_result(response, error_code=body.get("name"), message=body.get("message"))
        return SendResult(success=True, provider_message_id=body.get("id"))
