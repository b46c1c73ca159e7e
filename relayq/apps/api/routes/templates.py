from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db, get_tenant_id
from relayq.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from relayq.apps.api.response import SuccessEnvelope, TemplatePayload, success_response, template_payload
from relayq.services import templates


router = APIRouter(tags=["templates"], responses=DEFAULT_ERROR_RESPONSES)

ChannelName = Literal["sms", "email"]


class PreviewRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    notification_type: str = Field(min_length=1, max_length=100)
    custom_variables: dict[str, Any] | None = None
    channel: ChannelName = "sms"


class PreviewResponse(BaseModel):
    preview: str
    length: int
    segment_count: int
    encoding: str
    missing_variables: list[str]


class UpsertTemplateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    channel: ChannelName = "sms"
    available_variables: list[str] | None = None


class TemplateListResponse(BaseModel):
    templates: list[TemplatePayload]


@router.post("/templates/preview", response_model=SuccessEnvelope[PreviewResponse])
async def preview(
    payload: PreviewRequest,
    request: Request,
    _tenant_id: str = Depends(get_tenant_id),
) -> dict:
    rendered = templates.preview_template(
        payload.content,
        payload.notification_type,
        payload.custom_variables,
        channel=payload.channel,
    )
    data = PreviewResponse(
        preview=rendered.content,
        length=rendered.length,
        segment_count=rendered.segment_count,
        encoding=rendered.encoding,
        missing_variables=templates.extract_variables(rendered.content),
    )
    return success_response(request=request, data=data)


@router.get("/templates", response_model=SuccessEnvelope[TemplateListResponse])
async def list_templates(
    request: Request,
    channel: ChannelName = "sms",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await templates.list_templates(session=db, tenant_id=tenant_id, channel=channel)
    data = TemplateListResponse(templates=[template_payload(row) for row in rows])
    return success_response(request=request, data=data)


@router.put("/templates/{notification_type}", response_model=SuccessEnvelope[TemplatePayload])
async def put_template(
    notification_type: str,
    payload: UpsertTemplateRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await templates.upsert_template(
        session=db,
        tenant_id=tenant_id,
        notification_type=notification_type,
        content=payload.content,
        channel=payload.channel,
        available_variables=payload.available_variables,
    )
    return success_response(request=request, data=template_payload(row))


@router.delete("/templates/{notification_type}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    notification_type: str,
    channel: ChannelName = "sms",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> None:
    row = await templates.get_template_by_type(
        session=db, tenant_id=tenant_id, notification_type=notification_type, channel=channel
    )
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Template not found"},
        )
    await templates.delete_template(session=db, tenant_id=tenant_id, template_id=row.id, channel=channel)
