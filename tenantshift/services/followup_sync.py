from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ExportError, ImportBatchError, ProviderError, TransferError
from tenantshift.domain.models import MigrationJob
from tenantshift.domain.types import DeploymentStatus, HealthStatus
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.persistence.repos import tenants as tenants_repo
from tenantshift.providers.backends.factory import get_backend
from tenantshift.services.audit import record_event
from tenantshift.services.telemetry import increment_counter
from tenantshift.services.transfer.exporter import export_tenant_data
from tenantshift.services.transfer.importer import import_package
from tenantshift.services.transfer.package import build_package, get_package_storage


logger = logging.getLogger(__name__)

SCHEDULED = "scheduled"
COMPLETED = "completed"
EXPIRED = "expired"


def _missing_entities(
    source: dict[str, list[dict[str, Any]]],
    target: dict[str, list[dict[str, Any]]],
) -> dict[str, list[dict[str, Any]]]:
    # Backfill only: records the new deployment already has may have changed since cutover.
    missing: dict[str, list[dict[str, Any]]] = {}
    for collection, records in source.items():
        present = {str(record["id"]) for record in target.get(collection, [])}
        extra = [record for record in records if str(record["id"]) not in present]
        if extra:
            missing[collection] = extra
    return missing


def _set_followup(job: MigrationJob, status: str, **details: Any) -> None:
    metadata = dict(job.metadata_json or {})
    metadata["followup_sync"] = status
    if details:
        metadata["followup_sync_detail"] = details
    job.metadata_json = metadata


async def run_followup_sync(session: AsyncSession, job_id: str) -> str:
    """Reconcile an emergency migration once its old source is readable again.

    Returns the follow-up status left on the job: ``completed`` after a
    backfill, ``scheduled`` while the source is still unreachable, and
    ``expired`` once the source has been decommissioned.
    """
    job = await jobs_repo.require_job(session, job_id)
    status = (job.metadata_json or {}).get("followup_sync")
    if status != SCHEDULED:
        return status or ""
    source = await deployments_repo.get_deployment(session, job.source_deployment_id)
    if source is None or source.status == DeploymentStatus.DECOMMISSIONED.value:
        _set_followup(job, EXPIRED)
        await session.commit()
        logger.warning("followup_sync_expired job_id=%s tenant_id=%s", job.id, job.tenant_id)
        return EXPIRED

    source_backend = get_backend(source.backend_kind)
    source_handle = deployments_repo.to_handle(source)
    if await source_backend.health_check(source_handle) == HealthStatus.UNREACHABLE:
        logger.info("followup_sync_deferred job_id=%s source=%s", job.id, source.id)
        return SCHEDULED

    tenant = await tenants_repo.require_tenant(session, job.tenant_id)
    target = await deployments_repo.get_deployment(session, tenant.current_deployment_id)
    if target is None:
        raise TransferError(f"Tenant {job.tenant_id} has no active deployment to backfill")
    target_backend = get_backend(target.backend_kind)
    target_handle = deployments_repo.to_handle(target)

    try:
        package, uri = await export_tenant_data(
            backend=source_backend,
            handle=source_handle,
            tenant_id=job.tenant_id,
            job_id=job.id,
            kind=job.kind,
            retention_days=None,
        )
    except ExportError as exc:
        increment_counter("followup_sync_failures_total")
        logger.warning("followup_sync_failed job_id=%s error=%s", job.id, exc)
        return SCHEDULED
    try:
        current = await target_backend.read_entities(target_handle)
        delta = build_package(
            package_id=f"{package.package_id}_delta",
            tenant_id=job.tenant_id,
            job_id=job.id,
            kind=job.kind,
            source_deployment_id=source.id,
            collections=_missing_entities(package.collections, current),
            relations=package.relations,
            rows=package.rows,
            retention_days=None,
            retention_cutoff=None,
            notes=["emergency follow-up backfill"],
        )
        # Time-series rows are insert-or-ignore, so replaying all of them only adds the gaps.
        state = await import_package(
            backend=target_backend,
            handle=target_handle,
            package=delta,
            batch_size=get_settings().import_batch_size,
        )
    except (ProviderError, ImportBatchError) as exc:
        increment_counter("followup_sync_failures_total")
        logger.warning("followup_sync_failed job_id=%s error=%s", job.id, exc)
        return SCHEDULED
    finally:
        # The backfill package is scratch; only migration packages are retained.
        get_package_storage().delete(uri)

    backfilled = sum(len(records) for records in delta.collections.values())
    _set_followup(
        job,
        COMPLETED,
        at=datetime.now(timezone.utc).isoformat(),
        entities_backfilled=backfilled,
        batches=state["total_batches"],
    )
    await record_event(
        session=session,
        tenant_id=job.tenant_id,
        event_type="migration.followup_sync",
        outcome="success",
        resource_type="migration_job",
        resource_id=job.id,
        metadata={"source_deployment_id": source.id, "target_deployment_id": target.id, "entities": backfilled},
    )
    await session.commit()
    increment_counter("followup_syncs_completed_total")
    logger.info("followup_sync_completed job_id=%s entities_backfilled=%s", job.id, backfilled)
    return COMPLETED


async def run_due_followup_syncs(session: AsyncSession) -> dict[str, str]:
    job_ids = [job.id for job in await jobs_repo.list_followup_candidates(session)]
    return {job_id: await run_followup_sync(session, job_id) for job_id in job_ids}
