from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from relayq.core.logging import mask_destination
from relayq.domain.models import OptOutRecord, QueueEntry, TenantChannelSettings, Template


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(*, request: Request, data: Any) -> Any:
    # Envelope versioned routes only; unversioned probes return the bare payload.
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}


class QueueEntryPayload(BaseModel):
    id: str
    tenant_id: str
    channel: str
    destination: str
    recipient_type: str
    recipient_id: str | None = None
    recipient_name: str | None = None
    notification_type: str
    content: str
    content_length: int
    segment_count: int
    encoding: str
    status: str
    scheduled_at: datetime | None = None
    attempts: int
    max_attempts: int
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    provider_message_id: str | None = None
    skip_reason: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime
    updated_at: datetime


class OptOutPayload(BaseModel):
    id: str
    channel: str
    destination: str
    method: str
    recorded_at: datetime


class TemplatePayload(BaseModel):
    id: str
    channel: str
    notification_type: str
    content: str
    content_length: int
    segment_count: int
    available_variables: list[str]
    is_default: bool
    updated_at: datetime


class TenantSettingsPayload(BaseModel):
    tenant_id: str
    channel: str
    enabled: bool
    provider: str | None = None
    sender_id: str | None = None
    quiet_hours_enabled: bool
    quiet_hours_start: str
    quiet_hours_end: str
    quiet_hours_timezone: str
    rate_limit_per_second: int
    daily_limit: int
    health_status: str
    last_health_check_at: datetime | None = None


def entry_payload(entry: QueueEntry) -> QueueEntryPayload:
    return QueueEntryPayload.model_validate(entry, from_attributes=True)


def opt_out_payload(record: OptOutRecord, *, masked: bool = False) -> OptOutPayload:
    payload = OptOutPayload.model_validate(record, from_attributes=True)
    if masked:
        payload.destination = mask_destination(payload.destination)
    return payload


def template_payload(row: Template) -> TemplatePayload:
    return TemplatePayload(
        id=row.id,
        channel=row.channel,
        notification_type=row.notification_type,
        content=row.content,
        content_length=row.content_length,
        segment_count=row.segment_count,
        available_variables=list(row.available_variables or []),
        is_default=bool(row.is_default),
        updated_at=row.updated_at,
    )


def settings_payload(row: TenantChannelSettings) -> TenantSettingsPayload:
    # provider_credentials_ref stays server-side.
    return TenantSettingsPayload.model_validate(row, from_attributes=True)
