from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.apps.api.deps import AdminPrincipal, get_db, require_admin
from tenantshift.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantshift.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantshift.domain.models import MigrationJob
from tenantshift.domain.types import BackendKind, Decision, JobKind
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.services.migration_queue import enqueue_migration
from tenantshift.services.orchestrator import force_migration, request_cancellation
from tenantshift.services.placement import evaluate_tenant
from tenantshift.services.tenants import register_tenant


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class DecisionResponse(BaseModel):
    backend_kind: BackendKind
    tier: str
    reason: str
    confidence: float
    scores: dict[str, float]


class PlacementResponse(BaseModel):
    tenant_id: str
    current_backend: BackendKind
    decision: DecisionResponse
    should_migrate: bool
    migration_kind: JobKind | None
    reason: str


class TenantCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1)
    budget_monthly: float = Field(default=0.0, ge=0.0)
    entity_count: int = Field(default=0, ge=0)
    compliance_flags: list[str] = Field(default_factory=list)
    latency_requirement_ms: int | None = Field(default=None, gt=0)
    geo_regions: list[str] = Field(default_factory=list)
    peak_concurrency: int = Field(default=0, ge=0)
    backend_kind: BackendKind | None = None


class TenantResponse(BaseModel):
    tenant_id: str
    current_deployment_id: str | None
    decision: DecisionResponse


class MigrationCreateRequest(BaseModel):
    # Both optional: the decision engine fills in the target, the kind follows from it.
    target_backend: BackendKind | None = None
    kind: JobKind | None = None
    reason: str | None = Field(default=None, max_length=500)


class MigrationJobResponse(BaseModel):
    id: str
    tenant_id: str
    kind: str
    state: str
    source_deployment_id: str
    target_deployment_id: str | None
    target_backend: str
    target_tier: str
    forced: bool
    reason: str | None
    requested_by: str | None
    cancel_requested: bool
    retention_days: int | None
    export_package_id: str | None
    import_cursor: dict[str, Any]
    state_history: list[dict[str, Any]]
    metadata: dict[str, Any]
    error_code: str | None
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None
    completed_at: datetime | None


class MigrationListResponse(BaseModel):
    items: list[MigrationJobResponse]


def _decision_payload(decision: Decision) -> DecisionResponse:
    return DecisionResponse(
        backend_kind=decision.backend_kind,
        tier=decision.tier,
        reason=decision.reason,
        confidence=decision.confidence,
        scores=dict(decision.scores),
    )


def _job_payload(job: MigrationJob) -> MigrationJobResponse:
    return MigrationJobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        kind=job.kind,
        state=job.state,
        source_deployment_id=job.source_deployment_id,
        target_deployment_id=job.target_deployment_id,
        target_backend=job.target_backend,
        target_tier=job.target_tier,
        forced=job.forced,
        reason=job.reason,
        requested_by=job.requested_by,
        cancel_requested=job.cancel_requested,
        retention_days=job.retention_days,
        export_package_id=job.export_package_id,
        import_cursor=dict(job.import_cursor or {}),
        state_history=list(job.state_history or []),
        metadata=dict(job.metadata_json or {}),
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


@router.get("/tenants/{tenant_id}/placement", response_model=SuccessEnvelope[PlacementResponse])
async def get_placement(
    tenant_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Read-only: evaluating never writes tenant, deployment or job state.
    evaluation = await evaluate_tenant(db, tenant_id)
    payload = PlacementResponse(
        tenant_id=tenant_id,
        current_backend=evaluation.current_backend,
        decision=_decision_payload(evaluation.decision),
        should_migrate=evaluation.should_migrate,
        migration_kind=evaluation.kind,
        reason=evaluation.reason,
    )
    return success_response(request=request, data=payload)


@router.post("/tenants", status_code=201, response_model=SuccessEnvelope[TenantResponse])
async def create_tenant(
    body: TenantCreateRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant, decision = await register_tenant(
        db,
        tenant_id=body.tenant_id,
        name=body.name,
        budget_monthly=body.budget_monthly,
        entity_count=body.entity_count,
        compliance_flags=body.compliance_flags,
        latency_requirement_ms=body.latency_requirement_ms,
        geo_regions=body.geo_regions,
        peak_concurrency=body.peak_concurrency,
        backend_kind=body.backend_kind,
    )
    payload = TenantResponse(
        tenant_id=tenant.id,
        current_deployment_id=tenant.current_deployment_id,
        decision=_decision_payload(decision),
    )
    return success_response(request=request, data=payload)


@router.post(
    "/tenants/{tenant_id}/migrations",
    status_code=202,
    response_model=SuccessEnvelope[MigrationJobResponse],
)
async def create_migration(
    tenant_id: str,
    body: MigrationCreateRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Forced trigger: bypasses the confidence threshold, never per-tenant exclusivity.
    job = await force_migration(
        db,
        tenant_id=tenant_id,
        target_backend=body.target_backend,
        kind=body.kind,
        requested_by=principal.subject_id,
        reason=body.reason,
        request_id=get_request_id(request),
    )
    await enqueue_migration(job.id)
    await db.refresh(job)
    return success_response(request=request, data=_job_payload(job))


@router.get("/tenants/{tenant_id}/migrations", response_model=SuccessEnvelope[MigrationListResponse])
async def list_migrations(
    tenant_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    jobs = await jobs_repo.list_jobs_for_tenant(db, tenant_id, limit=limit)
    payload = MigrationListResponse(items=[_job_payload(job) for job in jobs])
    return success_response(request=request, data=payload)


@router.get("/migrations/{job_id}", response_model=SuccessEnvelope[MigrationJobResponse])
async def get_migration(
    job_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await jobs_repo.require_job(db, job_id)
    return success_response(request=request, data=_job_payload(job))


@router.post("/migrations/{job_id}/cancel", status_code=202, response_model=SuccessEnvelope[MigrationJobResponse])
async def cancel_migration(
    job_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await request_cancellation(
        db,
        job_id=job_id,
        requested_by=principal.subject_id,
        request_id=get_request_id(request),
    )
    # The runner honours the flag at its next step boundary.
    return success_response(request=request, data=_job_payload(job))
