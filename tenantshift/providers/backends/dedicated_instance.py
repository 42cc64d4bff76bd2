from __future__ import annotations

import logging
from typing import Any, Final

from tenantshift.core.errors import ProviderError
from tenantshift.domain.types import BackendKind, ConnectionInfo, DeploymentHandle
from tenantshift.providers.backends.local import LocalDataPlane


logger = logging.getLogger(__name__)

# Creation order; teardown runs it backwards.
RESOURCE_ORDER: tuple[str, ...] = ("compute", "database", "cache")


class DedicatedInstanceBackend(LocalDataPlane):
    kind: Final[BackendKind] = BackendKind.DEDICATED_INSTANCE

    async def ensure_capacity(self, *, tenant_id: str, reservation_id: str) -> dict[str, Any]:
        # Capacity is created on demand.
        _ = (tenant_id, reservation_id)
        return {}

    async def release_capacity(self, *, reservation_id: str) -> None:
        _ = reservation_id

    async def provision(
        self,
        *,
        tenant_id: str,
        tier: str,
        region_hints: list[str],
        deployment_id: str,
        reservation: dict[str, Any] | None = None,
    ) -> DeploymentHandle:
        _ = reservation
        self._infra.check_provision_fault(tenant_id)
        region = region_hints[0] if region_hints else "default"
        resources: dict[str, Any] = {"region": region}
        for kind in RESOURCE_ORDER:
            # Existing resources with the deterministic name are reused, never duplicated.
            resource = self._infra.create_resource(
                deployment_id=deployment_id,
                tenant_id=tenant_id,
                kind=kind,
                name=f"{deployment_id}-{kind}",
                attributes={"tier": tier, "region": region},
            )
            resources[kind] = resource.resource_id
            logger.info(
                "dedicated_resource_ready deployment_id=%s kind=%s resource_id=%s",
                deployment_id,
                kind,
                resource.resource_id,
            )
        return DeploymentHandle(
            deployment_id=deployment_id,
            backend_kind=self.kind,
            endpoint=f"{deployment_id}.dedicated.local",
            resources=resources,
        )

    async def deprovision(self, handle: DeploymentHandle) -> None:
        # Sweep by deployment so partially provisioned leftovers are reclaimed too.
        for resource in reversed(self._infra.resources_for(handle.deployment_id)):
            self._infra.delete_resource(resource.resource_id)

    async def database_connection_info(self, handle: DeploymentHandle) -> ConnectionInfo:
        database = handle.resources.get("database")
        if not database:
            raise ProviderError(f"Deployment {handle.deployment_id} has no database resource")
        return ConnectionInfo(
            dsn=f"postgresql://{handle.deployment_id}-database.dedicated.local/tenant",
            options={"resource_id": database},
        )
