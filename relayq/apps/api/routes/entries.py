from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db, get_tenant_id
from relayq.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from relayq.apps.api.response import QueueEntryPayload, SuccessEnvelope, entry_payload, success_response
from relayq.core.errors import InvalidDestinationError
from relayq.services import queue_store
from relayq.services.channels import get_channel
from relayq.services.producer import create_entry


router = APIRouter(tags=["entries"], responses=DEFAULT_ERROR_RESPONSES)

ChannelName = Literal["sms", "email"]


class CreateEntryRequest(BaseModel):
    destination: str = Field(min_length=1, max_length=320)
    notification_type: str = Field(min_length=1, max_length=100)
    # Inline template body; omit to render the stored or built-in template for notification_type.
    content: str | None = Field(default=None, max_length=10000)
    variables: dict[str, Any] | None = None
    channel: ChannelName = "sms"
    recipient_type: str = "customer"
    recipient_id: str | None = None
    recipient_name: str | None = None
    scheduled_at: datetime | None = None
    # Move straight to scheduled with scheduled_at=now when no explicit time is given.
    schedule_now: bool = False
    max_attempts: int | None = Field(default=None, ge=1, le=20)


class EntryListResponse(BaseModel):
    entries: list[QueueEntryPayload]
    total: int
    limit: int
    offset: int


class QueueStatsResponse(BaseModel):
    channel: str
    pending: int
    scheduled: int
    processing: int
    sent: int
    delivered: int
    failed: int
    skipped: int
    total: int
    sent_today: int
    failed_today: int


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": "Queue entry not found"},
    )


@router.post(
    "/entries",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[QueueEntryPayload],
)
async def create_queue_entry(
    payload: CreateEntryRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await create_entry(
        session=db,
        tenant_id=tenant_id,
        destination=payload.destination,
        notification_type=payload.notification_type,
        content=payload.content,
        variables=payload.variables,
        channel=payload.channel,
        recipient_type=payload.recipient_type,
        recipient_id=payload.recipient_id,
        recipient_name=payload.recipient_name,
        scheduled_at=payload.scheduled_at,
        max_attempts=payload.max_attempts,
    )
    if payload.schedule_now and payload.scheduled_at is None:
        await queue_store.schedule_entry(
            session=db, tenant_id=tenant_id, channel=entry.channel, entry_id=entry.id
        )
        entry = await queue_store.get_entry(session=db, tenant_id=tenant_id, entry_id=entry.id) or entry
    return success_response(request=request, data=entry_payload(entry))


@router.get("/entries", response_model=SuccessEnvelope[EntryListResponse])
async def list_queue_entries(
    request: Request,
    channel: ChannelName | None = None,
    status_filter: list[str] | None = Query(default=None, alias="status"),
    recipient_type: str | None = None,
    notification_type: str | None = None,
    destination: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if destination and channel:
        try:
            destination = get_channel(channel).normalize(destination)
        except InvalidDestinationError:
            destination = destination.strip()
    entries, total = await queue_store.list_entries(
        session=db,
        tenant_id=tenant_id,
        channel=channel,
        statuses=status_filter,
        recipient_type=recipient_type,
        notification_type=notification_type,
        destination=destination,
        limit=limit,
        offset=offset,
    )
    data = EntryListResponse(
        entries=[entry_payload(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=data)


@router.get("/entries/{entry_id}", response_model=SuccessEnvelope[QueueEntryPayload])
async def get_queue_entry(
    entry_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await queue_store.get_entry(session=db, tenant_id=tenant_id, entry_id=entry_id)
    if entry is None:
        raise _not_found()
    return success_response(request=request, data=entry_payload(entry))


@router.get("/stats", response_model=SuccessEnvelope[QueueStatsResponse])
async def get_queue_stats(
    request: Request,
    channel: ChannelName = "sms",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await queue_store.get_stats(session=db, tenant_id=tenant_id, channel=channel)
    data = QueueStatsResponse(channel=channel, **stats.as_dict())
    return success_response(request=request, data=data)
