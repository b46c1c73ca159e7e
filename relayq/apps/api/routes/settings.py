from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db, get_tenant_id
from relayq.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from relayq.apps.api.response import SuccessEnvelope, TenantSettingsPayload, settings_payload, success_response
from relayq.services.settings_store import SqlSettingsStore, upsert_tenant_settings


router = APIRouter(tags=["settings"], responses=DEFAULT_ERROR_RESPONSES)

ChannelName = Literal["sms", "email"]

_HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
_CLEARABLE_FIELDS = frozenset({"provider", "provider_credentials_ref", "sender_id"})


class UpdateSettingsRequest(BaseModel):
    enabled: bool | None = None
    provider: str | None = None
    provider_credentials_ref: str | None = None
    sender_id: str | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: str | None = Field(default=None, pattern=_HHMM_PATTERN)
    quiet_hours_end: str | None = Field(default=None, pattern=_HHMM_PATTERN)
    quiet_hours_timezone: str | None = None
    rate_limit_per_second: int | None = Field(default=None, ge=1, le=100)
    daily_limit: int | None = Field(default=None, ge=0)


@router.get("/settings/{channel}", response_model=SuccessEnvelope[TenantSettingsPayload])
async def get_settings_for_channel(
    channel: ChannelName,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await SqlSettingsStore(db).get(tenant_id, channel)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Tenant settings not found"},
        )
    return success_response(request=request, data=settings_payload(row))


@router.put("/settings/{channel}", response_model=SuccessEnvelope[TenantSettingsPayload])
async def put_settings_for_channel(
    channel: ChannelName,
    payload: UpdateSettingsRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only the nullable columns can be cleared explicitly; null elsewhere means "leave unchanged".
    fields = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in _CLEARABLE_FIELDS
    }
    row = await upsert_tenant_settings(session=db, tenant_id=tenant_id, channel=channel, **fields)
    return success_response(request=request, data=settings_payload(row))
