from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db, get_tenant_id
from relayq.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from relayq.apps.api.response import OptOutPayload, SuccessEnvelope, opt_out_payload, success_response
from relayq.domain.state import SKIP_RECIPIENT_OPTED_OUT
from relayq.services import opt_outs, queue_store


router = APIRouter(tags=["opt-outs"], responses=DEFAULT_ERROR_RESPONSES)

ChannelName = Literal["sms", "email"]


class CreateOptOutRequest(BaseModel):
    destination: str = Field(min_length=1, max_length=320)
    channel: ChannelName = "sms"
    method: Literal["admin", "user"] = "admin"
    context: dict[str, Any] | None = None
    # Also cancel queued sends for the destination, as a STOP reply would.
    cancel_pending: bool = True


class OptOutCreatedResponse(BaseModel):
    opt_out: OptOutPayload
    cancelled_entries: int


class OptOutStatusResponse(BaseModel):
    destination: str
    channel: str
    opted_out: bool
    opt_out: OptOutPayload | None = None


class OptOutRemovedResponse(BaseModel):
    removed: bool


@router.post(
    "/opt-outs",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[OptOutCreatedResponse],
)
async def create_opt_out(
    payload: CreateOptOutRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await opt_outs.add_opt_out(
        session=db,
        tenant_id=tenant_id,
        destination=payload.destination,
        method=payload.method,
        context=payload.context,
        channel=payload.channel,
    )
    cancelled = 0
    if payload.cancel_pending:
        cancelled = await queue_store.cancel_pending_for_destination(
            session=db,
            tenant_id=tenant_id,
            channel=payload.channel,
            destination=record.destination,
            reason=SKIP_RECIPIENT_OPTED_OUT,
        )
    data = OptOutCreatedResponse(opt_out=opt_out_payload(record), cancelled_entries=cancelled)
    return success_response(request=request, data=data)


@router.get("/opt-outs/{destination}", response_model=SuccessEnvelope[OptOutStatusResponse])
async def get_opt_out_status(
    destination: str,
    request: Request,
    channel: ChannelName = "sms",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await opt_outs.get_opt_out(session=db, tenant_id=tenant_id, destination=destination, channel=channel)
    data = OptOutStatusResponse(
        destination=destination,
        channel=channel,
        opted_out=record is not None,
        opt_out=opt_out_payload(record) if record is not None else None,
    )
    return success_response(request=request, data=data)


@router.delete("/opt-outs/{destination}", response_model=SuccessEnvelope[OptOutRemovedResponse])
async def delete_opt_out(
    destination: str,
    request: Request,
    channel: ChannelName = "sms",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    removed = await opt_outs.remove_opt_out(
        session=db, tenant_id=tenant_id, destination=destination, channel=channel
    )
    return success_response(request=request, data=OptOutRemovedResponse(removed=removed))
