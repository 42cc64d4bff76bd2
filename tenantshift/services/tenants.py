from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import CutoverError, ProviderError, ProvisioningError, ValidationError
from tenantshift.domain.models import Tenant
from tenantshift.domain.types import BackendKind, Decision, DeploymentHandle, DeploymentStatus
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.persistence.repos import tenants as tenants_repo
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.providers.backends.factory import get_backend
from tenantshift.services.audit import record_event
from tenantshift.services.cutover import CutoverManager, routing_domain_for
from tenantshift.services.placement import policy_from_settings, recommend, tier_for
from tenantshift.services.resilience import TransientException, provisioning_retry_policy, retry_async
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def register_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    budget_monthly: float = 0.0,
    entity_count: int = 0,
    compliance_flags: list[str] | None = None,
    latency_requirement_ms: int | None = None,
    geo_regions: list[str] | None = None,
    peak_concurrency: int = 0,
    backend_kind: BackendKind | None = None,
    cutover: CutoverManager | None = None,
) -> tuple[Tenant, Decision]:
    """Create a tenant and its first deployment, placed by the initial placement rule.

    ``backend_kind`` pins the placement for operators; otherwise the decision
    engine picks. Nothing is committed unless the deployment came up.
    """
    if await tenants_repo.get_tenant(session, tenant_id) is not None:
        raise ValidationError(f"Tenant {tenant_id} already exists")
    tenant = Tenant(
        id=tenant_id,
        name=name,
        budget_monthly=budget_monthly,
        entity_count=entity_count,
        compliance_flags=sorted(set(compliance_flags or [])),
        latency_requirement_ms=latency_requirement_ms,
        geo_regions=sorted(set(geo_regions or [])),
        peak_concurrency=peak_concurrency,
        status="active",
    )
    policy = policy_from_settings()
    decision = recommend(tenants_repo.profile_from_tenant(tenant), policy)
    if backend_kind is not None and backend_kind != decision.backend_kind:
        decision = Decision(
            backend_kind=backend_kind,
            tier=tier_for(backend_kind, tenant.entity_count, policy),
            reason=f"operator pinned {backend_kind.value}",
            confidence=decision.scores.get(backend_kind.value, 0.0),
            scores=decision.scores,
        )

    deployment_id = f"dep_{uuid4().hex}"
    deployment = await deployments_repo.create_deployment(
        session,
        deployment_id=deployment_id,
        tenant_id=tenant_id,
        backend_kind=decision.backend_kind,
        tier=decision.tier,
        routing_domain=routing_domain_for(tenant_id),
    )
    backend = get_backend(decision.backend_kind)

    async def _provision():
        return await backend.provision(
            tenant_id=tenant_id,
            tier=decision.tier,
            region_hints=list(tenant.geo_regions),
            deployment_id=deployment_id,
            reservation={"reservation_id": deployment_id},
        )

    try:
        handle = await retry_async(
            _provision,
            policy=provisioning_retry_policy(),
            retryable=lambda exc: isinstance(exc, (ProviderError, *TransientException)),
        )
        await (cutover or CutoverManager()).publish(deployment.routing_domain, handle.endpoint)
    except (ProviderError, CutoverError, *TransientException) as exc:
        await session.rollback()
        await _discard_partial(backend, tenant_id, deployment_id)
        increment_counter("tenant_registrations_failed_total")
        logger.warning("tenant_registration_failed tenant_id=%s error=%s", tenant_id, type(exc).__name__)
        raise ProvisioningError(f"Initial deployment for tenant {tenant_id} could not be created") from exc

    now = datetime.now(timezone.utc)
    deployment.endpoint = handle.endpoint
    deployment.resource_handles = dict(handle.resources)
    deployment.status = DeploymentStatus.ACTIVE.value
    deployment.activated_at = now
    tenant.current_deployment_id = deployment_id
    session.add(tenant)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        event_type="tenant.registered",
        outcome="success",
        resource_type="deployment",
        resource_id=deployment_id,
        metadata={
            "backend_kind": decision.backend_kind.value,
            "tier": decision.tier,
            "confidence": decision.confidence,
            "reason": decision.reason,
        },
    )
    await session.commit()
    logger.info(
        "tenant_registered tenant_id=%s backend=%s tier=%s confidence=%.4f",
        tenant_id,
        decision.backend_kind.value,
        decision.tier,
        decision.confidence,
    )
    return tenant, decision


async def _discard_partial(backend: BackendAdapter, tenant_id: str, deployment_id: str) -> None:
    # Sweep anything the failed attempt left behind; a sweep failure is only logged.
    handle = DeploymentHandle(
        deployment_id=deployment_id,
        backend_kind=backend.kind,
        endpoint="",
        resources={"reservation_id": deployment_id},
    )
    try:
        await backend.deprovision(handle)
        await backend.release_capacity(reservation_id=deployment_id)
    except ProviderError as exc:
        logger.error(
            "tenant_registration_cleanup_failed tenant_id=%s deployment_id=%s error=%s",
            tenant_id,
            deployment_id,
            type(exc).__name__,
        )
