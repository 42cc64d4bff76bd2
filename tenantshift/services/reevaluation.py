from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import MigrationExclusivityError, TenantShiftError
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.persistence.repos import tenants as tenants_repo
from tenantshift.services.audit import record_event
from tenantshift.services.migration_queue import enqueue_migration
from tenantshift.services.orchestrator import trigger_migration
from tenantshift.services.placement import evaluate_tenant
from tenantshift.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass
class ReevaluationSummary:
    evaluated: int = 0
    triggered: list[str] = field(default_factory=list)
    skipped_active: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "evaluated": self.evaluated,
            "triggered": list(self.triggered),
            "skipped_active": list(self.skipped_active),
            "errors": dict(self.errors),
        }


async def reevaluate_all(session: AsyncSession, *, dry_run: bool = False) -> ReevaluationSummary:
    """Periodic placement pass over every active tenant.

    Tenants that already have a job in flight are skipped rather than queued
    twice. Recommendations above the migration threshold start a job unless
    ``dry_run`` is set.
    """
    summary = ReevaluationSummary()
    tenant_ids = [tenant.id for tenant in await tenants_repo.list_active_tenants(session)]
    queued: list[str] = []
    for tenant_id in tenant_ids:
        if await jobs_repo.get_active_job_for_tenant(session, tenant_id) is not None:
            summary.skipped_active.append(tenant_id)
            increment_counter("reevaluation_skipped_active_total")
            continue
        try:
            evaluation = await evaluate_tenant(session, tenant_id)
        except TenantShiftError as exc:
            summary.errors[tenant_id] = exc.code
            logger.warning("reevaluation_failed tenant_id=%s code=%s", tenant_id, exc.code)
            continue
        summary.evaluated += 1
        if not evaluation.should_migrate or dry_run:
            continue
        try:
            job = await trigger_migration(
                session,
                tenant_id=tenant_id,
                target_backend=evaluation.decision.backend_kind,
                target_tier=evaluation.decision.tier,
                kind=evaluation.kind,
                reason=evaluation.reason,
            )
        except MigrationExclusivityError:
            # Lost the race against another trigger; that job covers this tenant.
            summary.skipped_active.append(tenant_id)
            increment_counter("reevaluation_skipped_active_total")
            continue
        summary.triggered.append(tenant_id)
        queued.append(job.id)

    await record_event(
        session=session,
        tenant_id=None,
        event_type="placement.reevaluated",
        outcome="success",
        metadata={**summary.to_dict(), "dry_run": dry_run},
        commit=True,
    )
    set_gauge("reevaluation_last_evaluated", summary.evaluated)
    logger.info(
        "reevaluation_completed evaluated=%s triggered=%s skipped_active=%s errors=%s",
        summary.evaluated,
        len(summary.triggered),
        len(summary.skipped_active),
        len(summary.errors),
    )
    # Enqueue after the pass so one slow migration cannot hold up the scan.
    for job_id in queued:
        await enqueue_migration(job_id)
    return summary
