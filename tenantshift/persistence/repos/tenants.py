from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import UnknownTenantError
from tenantshift.domain.models import Tenant
from tenantshift.domain.types import TenantProfile


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def require_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    # Unknown tenants are rejected before any state change.
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None or tenant.status != "active":
        raise UnknownTenantError(f"Unknown tenant: {tenant_id}")
    return tenant


async def list_active_tenants(session: AsyncSession) -> list[Tenant]:
    result = await session.execute(
        select(Tenant).where(Tenant.status == "active").order_by(Tenant.id)
    )
    return list(result.scalars().all())


def profile_from_tenant(tenant: Tenant) -> TenantProfile:
    # Sort flags so equal tenants always produce equal profiles.
    return TenantProfile(
        budget=float(tenant.budget_monthly or 0.0),
        entity_count=int(tenant.entity_count or 0),
        compliance_flags=tuple(sorted(tenant.compliance_flags or [])),
        latency_requirement_ms=tenant.latency_requirement_ms,
        geo_spread=len(set(tenant.geo_regions or [])),
        peak_concurrency=int(tenant.peak_concurrency or 0),
    )
