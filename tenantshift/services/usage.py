from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderError
from tenantshift.domain.models import Tenant, UsageSnapshot
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.providers.backends.factory import get_backend
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def latest_snapshot(session: AsyncSession, tenant_id: str) -> UsageSnapshot | None:
    result = await session.execute(
        select(UsageSnapshot)
        .where(UsageSnapshot.tenant_id == tenant_id)
        .order_by(UsageSnapshot.captured_at.desc(), UsageSnapshot.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _is_flat_metric(value: Any) -> bool:
    if isinstance(value, list):
        return all(not isinstance(item, (dict, list)) for item in value)
    return not isinstance(value, dict)


async def record_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    metrics: dict[str, Any],
    captured_at: datetime | None = None,
) -> UsageSnapshot:
    # Flat metric map plus scalar lists (geo_regions); unknown keys are kept for operators but ignored by scoring.
    snapshot = UsageSnapshot(
        tenant_id=tenant_id,
        captured_at=captured_at or _utc_now(),
        metrics_json={key: value for key, value in metrics.items() if _is_flat_metric(value)},
    )
    session.add(snapshot)
    return snapshot


def _fold_into_tenant(tenant: Tenant, metrics: dict[str, Any]) -> None:
    # Usage fields follow observed load; compliance and latency requirements are never touched.
    if metrics.get("entity_count") is not None:
        tenant.entity_count = int(metrics["entity_count"])
    if metrics.get("peak_concurrency") is not None:
        tenant.peak_concurrency = max(int(metrics["peak_concurrency"]), 0)
    regions = metrics.get("geo_regions")
    if isinstance(regions, list):
        tenant.geo_regions = sorted({str(region) for region in regions})


async def collect_usage_snapshots(session: AsyncSession, *, now: datetime | None = None) -> int:
    captured_at = now or _utc_now()
    captured = 0
    for deployment in await deployments_repo.list_all_active(session):
        tenant = await session.get(Tenant, deployment.tenant_id)
        if tenant is None or tenant.status != "active":
            continue
        backend = get_backend(deployment.backend_kind)
        try:
            metrics = await backend.collect_usage(deployments_repo.to_handle(deployment))
        except ProviderError as exc:
            # A degraded backend must not stall collection for everyone else.
            increment_counter("usage_collection_failed_total")
            logger.warning(
                "usage_collection_failed tenant_id=%s deployment_id=%s error=%s",
                deployment.tenant_id,
                deployment.id,
                type(exc).__name__,
            )
            continue
        await record_snapshot(session, tenant_id=tenant.id, metrics=metrics, captured_at=captured_at)
        _fold_into_tenant(tenant, metrics)
        captured += 1
    await session.commit()
    increment_counter("usage_snapshots_captured_total", captured)
    logger.info("usage_snapshots_collected count=%s", captured)
    return captured


async def prune_usage_snapshots(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(days=settings.usage_snapshot_retention_days)
    result = await session.execute(delete(UsageSnapshot).where(UsageSnapshot.captured_at < cutoff))
    await session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("usage_snapshots_pruned deleted=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
