from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.apps.api.deps import AdminPrincipal, get_db, require_admin
from tenantshift.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshift.apps.api.response import SuccessEnvelope, success_response
from tenantshift.domain.models import MigrationJob
from tenantshift.services import migration_queue
from tenantshift.services.telemetry import counters_snapshot, gauges_snapshot, state_duration_stats


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class OpsMetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    state_durations: dict[str, dict[str, float]]
    jobs_by_state: dict[str, int]
    queue_depth: int | None
    worker_heartbeat_at: datetime | None


class OpsHealthResponse(BaseModel):
    status: str
    database: str
    queue: str


async def _jobs_by_state(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(select(MigrationJob.state, func.count()).group_by(MigrationJob.state))
    return {state: int(count) for state, count in result.all()}


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        state_durations=state_duration_stats(window_s),
        jobs_by_state=await _jobs_by_state(db),
        queue_depth=await migration_queue.get_queue_depth(),
        worker_heartbeat_at=await migration_queue.get_worker_heartbeat(),
    )
    return success_response(request=request, data=payload)


@router.get("/health", response_model=SuccessEnvelope[OpsHealthResponse])
async def ops_health(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Keep the DB check lightweight to avoid introducing new load.
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
    depth = await migration_queue.get_queue_depth()
    queue = "ok" if depth is not None else "unavailable"
    details: dict[str, Any] = {"database": database, "queue": queue}
    status = "ok" if all(value == "ok" for value in details.values()) else "degraded"
    return success_response(request=request, data=OpsHealthResponse(status=status, **details))
