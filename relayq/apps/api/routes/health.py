from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.apps.api.deps import get_db
from relayq.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from relayq.apps.api.response import SuccessEnvelope, success_response
from relayq.persistence.db import pool_stats
from relayq.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]
    counters: dict[str, int]
    gauges: dict[str, float]
    # Per-gateway call count, p50/p95 latency and error rate over the last five minutes.
    providers: dict[str, dict[str, float | None]]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can tell "up but no DB" apart from "down".
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        database = "unreachable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        providers=external_latency_by_integration(300),
    )
    return success_response(request=request, data=payload)
