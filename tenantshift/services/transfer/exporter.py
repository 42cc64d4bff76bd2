from __future__ import annotations

from datetime import datetime
import logging
import uuid

from tenantshift.core.errors import ExportError, ProviderError
from tenantshift.domain.types import DeploymentHandle
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.services.transfer.package import ExportPackage, build_package, get_package_storage
from tenantshift.services.transfer.retention import retention_cutoff


logger = logging.getLogger(__name__)


async def export_tenant_data(
    *,
    backend: BackendAdapter,
    handle: DeploymentHandle,
    tenant_id: str,
    job_id: str,
    kind: str,
    retention_days: int | None,
    now: datetime | None = None,
) -> tuple[ExportPackage, str]:
    # Read-only against the source: only read_* calls reach the backend.
    cutoff = retention_cutoff(retention_days, now=now)
    try:
        collections = await backend.read_entities(handle)
        relations = await backend.entity_relations(handle)
        rows = await backend.read_time_series(handle, since=cutoff)
    except ProviderError as exc:
        raise ExportError(f"Source deployment {handle.deployment_id} could not be read") from exc

    package = build_package(
        package_id=f"pkg_{uuid.uuid4().hex}",
        tenant_id=tenant_id,
        job_id=job_id,
        kind=kind,
        source_deployment_id=handle.deployment_id,
        collections=collections,
        relations=relations,
        rows=rows,
        retention_days=retention_days,
        retention_cutoff=cutoff,
        exported_at=now,
    )
    uri = get_package_storage().write(package)
    logger.info(
        "export_package_written job_id=%s package_id=%s entities=%s rows=%s cutoff=%s",
        job_id,
        package.package_id,
        sum(package.manifest.structured.counts.values()),
        package.manifest.time_series.counts.get("rows", 0),
        package.manifest.retention_cutoff,
    )
    return package, uri


def rebase_package(package: ExportPackage, *, job_id: str, kind: str, notes: list[str]) -> ExportPackage:
    # Re-issue an older package under a new job id; contents and checksums are unchanged.
    return build_package(
        package_id=f"pkg_{uuid.uuid4().hex}",
        tenant_id=package.manifest.tenant_id,
        job_id=job_id,
        kind=kind,
        source_deployment_id=package.manifest.source_deployment_id,
        collections=package.collections,
        relations=package.relations,
        rows=package.rows,
        retention_days=package.manifest.retention_days,
        retention_cutoff=(
            datetime.fromisoformat(package.manifest.retention_cutoff)
            if package.manifest.retention_cutoff
            else None
        ),
        best_effort=True,
        notes=notes,
    )
