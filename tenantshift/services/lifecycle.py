from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderError
from tenantshift.domain.types import DeploymentStatus
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.providers.backends.factory import get_backend
from tenantshift.services.audit import record_event
from tenantshift.services.migration_queue import enqueue_migration
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def decommission_due_deployments(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    """Tear down drained sources whose grace window has passed.

    A deployment that cannot be torn down yet stays draining and is retried
    on the next sweep.
    """
    current = now or _utc_now()
    decommissioned: list[str] = []
    for deployment in await deployments_repo.list_due_for_decommission(session, now=current):
        backend = get_backend(deployment.backend_kind)
        handle = deployments_repo.to_handle(deployment)
        try:
            await backend.purge_tenant_data(handle)
            await backend.deprovision(handle)
        except ProviderError as exc:
            increment_counter("decommission_failures_total")
            logger.warning(
                "deployment_decommission_failed deployment_id=%s tenant_id=%s error=%s",
                deployment.id,
                deployment.tenant_id,
                type(exc).__name__,
            )
            continue
        deployment.status = DeploymentStatus.DECOMMISSIONED.value
        deployment.resource_handles = {}
        deployment.decommissioned_at = current
        await record_event(
            session=session,
            tenant_id=deployment.tenant_id,
            event_type="deployment.decommissioned",
            outcome="success",
            resource_type="deployment",
            resource_id=deployment.id,
            metadata={"backend_kind": deployment.backend_kind, "tier": deployment.tier},
        )
        await session.commit()
        decommissioned.append(deployment.id)
        logger.info("deployment_decommissioned deployment_id=%s tenant_id=%s", deployment.id, deployment.tenant_id)
    if decommissioned:
        increment_counter("deployments_decommissioned_total", len(decommissioned))
    return decommissioned


async def resume_stale_jobs(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    # Jobs whose runner died mid-step are handed back to the queue; re-entering a state is safe.
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(seconds=settings.migration_stale_after_s)
    stale = await jobs_repo.list_stale_jobs(session, updated_before=cutoff)
    job_ids = [job.id for job in stale]
    for job_id in job_ids:
        increment_counter("migrations_resumed_total")
        await enqueue_migration(job_id, resume=True)
    if job_ids:
        logger.warning("stale_migrations_resumed count=%s", len(job_ids))
    return job_ids
