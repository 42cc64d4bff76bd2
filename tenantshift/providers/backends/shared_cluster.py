from __future__ import annotations

import logging
from typing import Any, Final

from tenantshift.core.errors import ProviderError
from tenantshift.domain.types import BackendKind, ConnectionInfo, DeploymentHandle
from tenantshift.providers.backends.local import LocalDataPlane


logger = logging.getLogger(__name__)


class SharedClusterBackend(LocalDataPlane):
    # Tenants share cluster compute; isolation is a per-tenant schema on the cluster database.
    kind: Final[BackendKind] = BackendKind.SHARED_CLUSTER

    async def ensure_capacity(self, *, tenant_id: str, reservation_id: str) -> dict[str, Any]:
        cluster_id = self._infra.find_or_reserve_slot(tenant_id=tenant_id, reservation_id=reservation_id)
        logger.info("shared_slot_reserved tenant_id=%s cluster_id=%s", tenant_id, cluster_id)
        return {"cluster_id": cluster_id, "reservation_id": reservation_id}

    async def release_capacity(self, *, reservation_id: str) -> None:
        self._infra.release_slot(reservation_id)

    async def provision(
        self,
        *,
        tenant_id: str,
        tier: str,
        region_hints: list[str],
        deployment_id: str,
        reservation: dict[str, Any] | None = None,
    ) -> DeploymentHandle:
        _ = region_hints
        self._infra.check_provision_fault(tenant_id)
        reservation_id = (reservation or {}).get("reservation_id") or deployment_id
        # Re-entering after a crash finds the slot already held by this reservation.
        cluster_id = self._infra.find_or_reserve_slot(tenant_id=tenant_id, reservation_id=reservation_id)
        schema = self._infra.create_resource(
            deployment_id=deployment_id,
            tenant_id=tenant_id,
            kind="schema",
            name=f"{cluster_id}:tenant_{tenant_id}:{deployment_id}",
            attributes={"tier": tier},
        )
        return DeploymentHandle(
            deployment_id=deployment_id,
            backend_kind=self.kind,
            endpoint=f"{cluster_id}.shared.local",
            resources={
                "cluster_id": cluster_id,
                "reservation_id": reservation_id,
                "schema": schema.resource_id,
            },
        )

    async def deprovision(self, handle: DeploymentHandle) -> None:
        for resource in reversed(self._infra.resources_for(handle.deployment_id)):
            self._infra.delete_resource(resource.resource_id)
        reservation_id = handle.resources.get("reservation_id")
        if reservation_id:
            self._infra.release_slot(reservation_id)

    async def database_connection_info(self, handle: DeploymentHandle) -> ConnectionInfo:
        cluster_id = handle.resources.get("cluster_id")
        if not cluster_id:
            raise ProviderError(f"Deployment {handle.deployment_id} has no cluster assignment")
        return ConnectionInfo(
            dsn=f"postgresql://{cluster_id}.shared.local/tenants",
            options={"search_path": f"tenant_{handle.deployment_id}"},
        )
