from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.domain.models import Deployment
from tenantshift.domain.types import BackendKind, DeploymentHandle, DeploymentStatus


async def create_deployment(
    session: AsyncSession,
    *,
    deployment_id: str,
    tenant_id: str,
    backend_kind: BackendKind,
    tier: str,
    routing_domain: str,
) -> Deployment:
    # New deployments always start in provisioning; activation is explicit.
    deployment = Deployment(
        id=deployment_id,
        tenant_id=tenant_id,
        backend_kind=backend_kind.value,
        tier=tier,
        status=DeploymentStatus.PROVISIONING.value,
        routing_domain=routing_domain,
        resource_handles={},
    )
    session.add(deployment)
    return deployment


async def get_deployment(session: AsyncSession, deployment_id: str | None) -> Deployment | None:
    if not deployment_id:
        return None
    return await session.get(Deployment, deployment_id)


async def list_active_deployments(session: AsyncSession, tenant_id: str) -> list[Deployment]:
    result = await session.execute(
        select(Deployment).where(
            Deployment.tenant_id == tenant_id,
            Deployment.status == DeploymentStatus.ACTIVE.value,
        )
    )
    return list(result.scalars().all())


async def list_all_active(session: AsyncSession) -> list[Deployment]:
    result = await session.execute(
        select(Deployment)
        .where(Deployment.status == DeploymentStatus.ACTIVE.value)
        .order_by(Deployment.tenant_id)
    )
    return list(result.scalars().all())


async def list_due_for_decommission(session: AsyncSession, *, now: datetime) -> list[Deployment]:
    # Compare in SQL so naive SQLite timestamps and aware Postgres ones behave alike.
    result = await session.execute(
        select(Deployment).where(
            Deployment.status == DeploymentStatus.DRAINING.value,
            Deployment.decommission_after.is_not(None),
            Deployment.decommission_after <= now,
        )
    )
    return list(result.scalars().all())


def to_handle(deployment: Deployment) -> DeploymentHandle:
    return DeploymentHandle(
        deployment_id=deployment.id,
        backend_kind=BackendKind(deployment.backend_kind),
        endpoint=deployment.endpoint or "",
        resources=dict(deployment.resource_handles or {}),
    )
