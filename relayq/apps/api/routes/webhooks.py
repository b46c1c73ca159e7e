from __future__ import annotations

import json
import logging
from typing import Any, Literal
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db
from relayq.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from relayq.apps.api.response import SuccessEnvelope, get_request_id, success_response
from relayq.core.config import get_settings
from relayq.core.errors import WebhookSignatureError
from relayq.services.telemetry import increment_counter
from relayq.services.webhook_signature import SIGNATURE_HEADER, verify_signature
from relayq.services.webhooks import (
    InboundMessage,
    StatusCallback,
    apply_status_callback,
    handle_inbound_message,
)


logger = logging.getLogger(__name__)

# Provider callbacks authenticate with the body signature, not the API bearer token.
router = APIRouter(tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)

ChannelName = Literal["sms", "email"]


class StatusCallbackResponse(BaseModel):
    applied: bool
    action: str
    reason: str | None = None


class InboundResponse(BaseModel):
    action: str
    tenant_id: str | None = None
    cancelled_entries: int = 0


def _unreadable(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": "VALIDATION_ERROR", "message": message},
    )


async def _verified_body(request: Request) -> bytes:
    # Verify against the exact bytes received before any parsing.
    raw_body = await request.body()
    result = verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), get_settings().webhook_signing_secret)
    if not result.ok:
        increment_counter("webhook_signature_rejected")
        logger.warning("webhook_signature_rejected path=%s reason=%s", request.url.path, result.reason)
        raise WebhookSignatureError(result.reason)
    return raw_body


def _parse_payload(request: Request, raw_body: bytes) -> dict[str, Any]:
    # SMS providers post form-encoded bodies; email providers post JSON.
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
    if not raw_body:
        return {}
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise _unreadable("Callback body is neither form-encoded nor JSON") from exc
    if not isinstance(payload, dict):
        raise _unreadable("Callback body must be an object")
    return payload


def _status_callback(payload: dict[str, Any]) -> StatusCallback:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    message_id = (
        payload.get("MessageSid")
        or payload.get("provider_message_id")
        or data.get("email_id")
        or data.get("id")
    )
    status_value = payload.get("MessageStatus") or payload.get("status") or payload.get("type")
    if not message_id or not status_value:
        raise _unreadable("Callback payload is missing fields")
    error_code = payload.get("ErrorCode") or payload.get("error_code")
    error_message = payload.get("ErrorMessage") or payload.get("error_message")
    return StatusCallback(
        provider_message_id=str(message_id),
        status=str(status_value),
        error_code=str(error_code) if error_code else None,
        error_message=str(error_message) if error_message else None,
    )


def _inbound_message(payload: dict[str, Any]) -> InboundMessage:
    sender = payload.get("From") or payload.get("from") or payload.get("sender")
    recipient = payload.get("To") or payload.get("to") or payload.get("recipient")
    if not sender or not recipient:
        raise _unreadable("Inbound payload is missing fields")
    body = payload.get("Body") or payload.get("body") or payload.get("text") or ""
    return InboundMessage(sender=str(sender), recipient=str(recipient), body=str(body))


@router.post(
    "/webhooks/{channel}/{tenant_id}/status",
    response_model=SuccessEnvelope[StatusCallbackResponse],
)
async def status_callback(
    channel: ChannelName,
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    raw_body = await _verified_body(request)
    callback = _status_callback(_parse_payload(request, raw_body))
    outcome = await apply_status_callback(
        session=db,
        tenant_id=tenant_id,
        channel=channel,
        callback=callback,
        request_id=get_request_id(request),
    )
    increment_counter(f"webhook_status_{outcome.action}")
    data = StatusCallbackResponse(applied=outcome.applied, action=outcome.action, reason=outcome.reason)
    return success_response(request=request, data=data)


@router.post("/webhooks/{channel}/inbound", response_model=SuccessEnvelope[InboundResponse])
async def inbound_message(
    channel: ChannelName,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    raw_body = await _verified_body(request)
    message = _inbound_message(_parse_payload(request, raw_body))
    outcome = await handle_inbound_message(
        session=db,
        channel=channel,
        message=message,
        request_id=get_request_id(request),
    )
    increment_counter(f"webhook_inbound_{outcome.action}")
    data = InboundResponse(
        action=outcome.action,
        tenant_id=outcome.tenant_id,
        cancelled_entries=outcome.cancelled_entries,
    )
    return success_response(request=request, data=data)
