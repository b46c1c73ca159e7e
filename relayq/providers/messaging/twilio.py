from __future__ import annotations

from relayq.core.errors import ProviderConfigError
from relayq.providers.messaging.base import SendRequest, SendResult
from relayq.providers.messaging.http import HttpProviderBase, response_json


TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioSmsProvider(HttpProviderBase):
    name = "twilio"
    integration = "messaging.twilio"

    def _status_callback_url(self, request: SendRequest) -> str | None:
        base = self._settings.twilio_status_callback_base_url
        if not base:
            return None
        return f"{base.rstrip('/')}/v1/webhooks/sms/{request.tenant_id}/status"

    async def send(self, request: SendRequest) -> SendResult:
        account_sid = self._settings.twilio_account_sid
        auth_token = self._settings.twilio_auth_token
        if not account_sid or not auth_token:
            raise ProviderConfigError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required for Twilio SMS")
        if not request.sender_id:
            raise ProviderConfigError("Tenant sender_id is required for Twilio SMS")

        form = {"To": request.destination, "From": request.sender_id, "Body": request.content}
        callback_url = self._status_callback_url(request)
        if callback_url:
            form["StatusCallback"] = callback_url
        response = await self._post(
            f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json",
            data=form,
            auth=(account_sid, auth_token),
        )
        payload = response_json(response)
        if response.status_code >= 400:
            code = payload.get("code")
            return self._error_result(
                response,
                error_code=str(code) if code is not None else None,
                message=payload.get("message"),
            )
        return SendResult(success=True, provider_message_id=payload.get("sid"))
