from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from tenantshift.domain.types import BackendKind, ConnectionInfo, DeploymentHandle, HealthStatus


# {child_collection: {foreign_key_field: parent_collection}}
EntityRelations = dict[str, dict[str, str]]


class BackendAdapter(Protocol):
    kind: BackendKind

    async def ensure_capacity(self, *, tenant_id: str, reservation_id: str) -> dict[str, Any]:
        ...

    async def release_capacity(self, *, reservation_id: str) -> None:
        ...

    async def provision(
        self,
        *,
        tenant_id: str,
        tier: str,
        region_hints: list[str],
        deployment_id: str,
        reservation: dict[str, Any] | None = None,
    ) -> DeploymentHandle:
        ...

    async def deprovision(self, handle: DeploymentHandle) -> None:
        ...

    async def list_resources(self, handle: DeploymentHandle) -> list[str]:
        ...

    async def health_check(self, handle: DeploymentHandle) -> HealthStatus:
        ...

    async def database_connection_info(self, handle: DeploymentHandle) -> ConnectionInfo:
        ...

    async def read_entities(self, handle: DeploymentHandle) -> dict[str, list[dict[str, Any]]]:
        ...

    async def entity_relations(self, handle: DeploymentHandle) -> EntityRelations:
        ...

    async def read_time_series(
        self, handle: DeploymentHandle, *, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        ...

    async def upsert_entities(
        self,
        handle: DeploymentHandle,
        *,
        collection: str,
        records: list[dict[str, Any]],
        relations: EntityRelations,
    ) -> int:
        ...

    async def upsert_time_series(self, handle: DeploymentHandle, *, rows: list[dict[str, Any]]) -> int:
        ...

    async def purge_tenant_data(self, handle: DeploymentHandle) -> None:
        ...

    async def count_records(self, handle: DeploymentHandle) -> dict[str, Any]:
        ...

    async def collect_usage(self, handle: DeploymentHandle) -> dict[str, Any]:
        ...
