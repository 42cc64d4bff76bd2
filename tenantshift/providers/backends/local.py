from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
import itertools
import logging
from typing import Any

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderError, ProviderUnavailableError
from tenantshift.domain.types import DeploymentHandle, HealthStatus
from tenantshift.providers.backends.base import EntityRelations


logger = logging.getLogger(__name__)


def series_key(row: dict[str, Any]) -> tuple[str, str, str]:
    # Natural key for time-series rows; duplicates on this key are ignored on insert.
    return (str(row["series"]), str(row["entity_id"]), str(row["ts"]))


def parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class LocalResource:
    resource_id: str
    kind: str
    name: str
    deployment_id: str
    tenant_id: str
    seq: int
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class LocalDataset:
    entities: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    relations: EntityRelations = field(default_factory=dict)
    series: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)


class LocalInfrastructure:
    """In-process stand-in for the compute, database and cache APIs of both backends.

    Holds per-deployment tenant datasets and supports fault injection so the
    failure paths of a migration can be exercised without a real provider.
    """

    def __init__(self, *, cluster_count: int, cluster_slots: int) -> None:
        self.cluster_slots = cluster_slots
        # cluster_id -> {reservation_id: tenant_id}
        self.clusters: dict[str, dict[str, str]] = {
            f"shared-{index + 1}": {} for index in range(max(0, cluster_count))
        }
        self.resources: dict[str, LocalResource] = {}
        self.datasets: dict[str, LocalDataset] = {}
        self.write_counts: dict[str, int] = defaultdict(int)
        self.usage_overrides: dict[str, dict[str, Any]] = {}
        self._seq = itertools.count(1)
        self._series_calls: dict[str, int] = defaultdict(int)
        self._deployment_tenants: dict[str, str] = {}
        # Fault injection state.
        self._provision_failures: dict[str, int] = {}
        self._import_failures: dict[str, list[int]] = {}
        self._dropped_rows: dict[str, int] = {}
        self._unreachable: dict[str, bool] = {}
        self._degraded: set[str] = set()
        self._undeletable: set[str] = set()

    # capacity

    def find_or_reserve_slot(self, *, tenant_id: str, reservation_id: str) -> str:
        for cluster_id, slots in self.clusters.items():
            if reservation_id in slots:
                return cluster_id
        candidates = [
            (self.cluster_slots - len(slots), cluster_id)
            for cluster_id, slots in sorted(self.clusters.items())
            if len(slots) < self.cluster_slots
        ]
        if not candidates:
            raise ProviderError("No shared-cluster slot available")
        # Most free slots first; name order breaks ties.
        _, cluster_id = sorted(candidates, key=lambda item: (-item[0], item[1]))[0]
        self.clusters[cluster_id][reservation_id] = tenant_id
        return cluster_id

    def release_slot(self, reservation_id: str) -> None:
        for slots in self.clusters.values():
            slots.pop(reservation_id, None)

    def slot_holder(self, reservation_id: str) -> str | None:
        for cluster_id, slots in self.clusters.items():
            if reservation_id in slots:
                return cluster_id
        return None

    # resources

    def register_deployment(self, deployment_id: str, tenant_id: str) -> None:
        self._deployment_tenants[deployment_id] = tenant_id

    def check_provision_fault(self, tenant_id: str) -> None:
        remaining = self._provision_failures.get(tenant_id, 0)
        if remaining > 0:
            self._provision_failures[tenant_id] = remaining - 1
            raise ProviderUnavailableError("Simulated provider outage during provisioning")

    def create_resource(
        self,
        *,
        deployment_id: str,
        tenant_id: str,
        kind: str,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> LocalResource:
        # Deterministic names make creation idempotent across retries and resumption.
        for resource in self.resources.values():
            if resource.name == name:
                return resource
        seq = next(self._seq)
        resource = LocalResource(
            resource_id=f"{kind}-{seq}",
            kind=kind,
            name=name,
            deployment_id=deployment_id,
            tenant_id=tenant_id,
            seq=seq,
            attributes=dict(attributes or {}),
        )
        self.resources[resource.resource_id] = resource
        self.register_deployment(deployment_id, tenant_id)
        return resource

    def delete_resource(self, resource_id: str) -> None:
        resource = self.resources.get(resource_id)
        if resource is None:
            return
        if resource.tenant_id in self._undeletable:
            raise ProviderError(f"Resource {resource.name} refused deletion")
        del self.resources[resource_id]

    def resources_for(self, deployment_id: str) -> list[LocalResource]:
        return sorted(
            (item for item in self.resources.values() if item.deployment_id == deployment_id),
            key=lambda item: item.seq,
        )

    # data plane

    def _check_reachable(self, deployment_id: str, *, write: bool) -> None:
        if deployment_id not in self._unreachable:
            return
        reads_fail = self._unreachable[deployment_id]
        if write or reads_fail:
            raise ProviderUnavailableError(f"Deployment {deployment_id} is unreachable")

    def dataset(self, deployment_id: str) -> LocalDataset:
        return self.datasets.setdefault(deployment_id, LocalDataset())

    def seed(
        self,
        deployment_id: str,
        *,
        entities: dict[str, list[dict[str, Any]]] | None = None,
        relations: EntityRelations | None = None,
        rows: list[dict[str, Any]] | None = None,
    ) -> None:
        # Pre-existing tenant data; not counted as migration writes.
        dataset = self.dataset(deployment_id)
        for collection, records in (entities or {}).items():
            bucket = dataset.entities.setdefault(collection, {})
            for record in records:
                bucket[str(record["id"])] = dict(record)
        dataset.relations.update(relations or {})
        for row in rows or []:
            dataset.series.setdefault(series_key(row), dict(row))

    def read_entities(self, deployment_id: str) -> dict[str, list[dict[str, Any]]]:
        self._check_reachable(deployment_id, write=False)
        dataset = self.dataset(deployment_id)
        return {
            collection: [dict(bucket[key]) for key in sorted(bucket)]
            for collection, bucket in sorted(dataset.entities.items())
        }

    def entity_relations(self, deployment_id: str) -> EntityRelations:
        self._check_reachable(deployment_id, write=False)
        return {child: dict(fks) for child, fks in self.dataset(deployment_id).relations.items()}

    def read_time_series(self, deployment_id: str, *, since: datetime | None) -> list[dict[str, Any]]:
        self._check_reachable(deployment_id, write=False)
        rows = [
            dict(row)
            for row in self.dataset(deployment_id).series.values()
            if since is None or parse_ts(row["ts"]) >= since
        ]
        rows.sort(key=lambda row: (parse_ts(row["ts"]), str(row["series"]), str(row["entity_id"])))
        return rows

    def upsert_entities(
        self,
        deployment_id: str,
        *,
        collection: str,
        records: list[dict[str, Any]],
        relations: EntityRelations,
    ) -> int:
        self._check_reachable(deployment_id, write=True)
        dataset = self.dataset(deployment_id)
        dataset.relations.update({collection: dict(relations.get(collection, {}))})
        # Enforce foreign keys the way a relational target would, in record order within the chunk.
        accepted: set[str] = set()
        for record in records:
            for fk_field, parent in relations.get(collection, {}).items():
                parent_id = record.get(fk_field)
                if parent_id is None:
                    continue
                if parent == collection and (str(parent_id) in accepted or str(parent_id) == str(record["id"])):
                    continue
                if str(parent_id) not in dataset.entities.get(parent, {}):
                    raise ProviderError(
                        f"Foreign key violation: {collection}.{fk_field}={parent_id} has no {parent} row"
                    )
            accepted.add(str(record["id"]))
        bucket = dataset.entities.setdefault(collection, {})
        for record in records:
            bucket[str(record["id"])] = dict(record)
        self.write_counts[deployment_id] += len(records)
        return len(records)

    def upsert_time_series(self, deployment_id: str, *, rows: list[dict[str, Any]]) -> int:
        self._check_reachable(deployment_id, write=True)
        self._series_calls[deployment_id] += 1
        tenant_id = self._deployment_tenants.get(deployment_id)
        fault = self._import_failures.get(tenant_id or "")
        if fault and fault[1] > 0 and self._series_calls[deployment_id] == fault[0]:
            fault[1] -= 1
            raise ProviderError(f"Simulated write failure on batch {fault[0]}")
        dataset = self.dataset(deployment_id)
        inserted = 0
        for row in rows:
            if tenant_id and self._dropped_rows.get(tenant_id, 0) > 0:
                self._dropped_rows[tenant_id] -= 1
                continue
            key = series_key(row)
            if key in dataset.series:
                continue
            dataset.series[key] = dict(row)
            inserted += 1
        self.write_counts[deployment_id] += inserted
        return inserted

    def purge(self, deployment_id: str) -> None:
        self.datasets.pop(deployment_id, None)
        self.write_counts[deployment_id] += 1

    def count_records(self, deployment_id: str) -> dict[str, Any]:
        self._check_reachable(deployment_id, write=False)
        dataset = self.dataset(deployment_id)
        return {
            "entities": {collection: len(bucket) for collection, bucket in sorted(dataset.entities.items())},
            "time_series": len(dataset.series),
        }

    def collect_usage(self, deployment_id: str) -> dict[str, Any]:
        self._check_reachable(deployment_id, write=False)
        dataset = self.dataset(deployment_id)
        # Only what the simulator can observe; load, latency and regions come from usage_overrides.
        usage: dict[str, Any] = {
            "entity_count": sum(len(bucket) for bucket in dataset.entities.values()),
            "daily_write_volume": self.write_counts.get(deployment_id, 0),
        }
        usage.update(self.usage_overrides.get(deployment_id, {}))
        return usage

    def health(self, deployment_id: str) -> str:
        if deployment_id in self._unreachable:
            return "unreachable"
        if deployment_id in self._degraded:
            return "degraded"
        return "healthy"

    # fault injection

    def fail_next_provisions(self, tenant_id: str, count: int) -> None:
        self._provision_failures[tenant_id] = count

    def fail_import_batch(self, tenant_id: str, batch_number: int, *, times: int = 1) -> None:
        self._import_failures[tenant_id] = [batch_number, times]

    def drop_time_series_rows(self, tenant_id: str, count: int) -> None:
        self._dropped_rows[tenant_id] = count

    def set_unreachable(self, deployment_id: str, *, reads_fail: bool = False) -> None:
        self._unreachable[deployment_id] = reads_fail

    def set_degraded(self, deployment_id: str) -> None:
        self._degraded.add(deployment_id)

    def set_healthy(self, deployment_id: str) -> None:
        self._unreachable.pop(deployment_id, None)
        self._degraded.discard(deployment_id)

    def refuse_deletion(self, tenant_id: str, refuse: bool = True) -> None:
        if refuse:
            self._undeletable.add(tenant_id)
        else:
            self._undeletable.discard(tenant_id)


_infrastructure: LocalInfrastructure | None = None


def get_local_infrastructure() -> LocalInfrastructure:
    global _infrastructure
    if _infrastructure is None:
        settings = get_settings()
        _infrastructure = LocalInfrastructure(
            cluster_count=settings.shared_cluster_count,
            cluster_slots=settings.shared_cluster_slots,
        )
    return _infrastructure


def reset_local_infrastructure() -> None:
    # Tests start from an empty fleet.
    global _infrastructure
    _infrastructure = None


class LocalDataPlane:
    # Data-plane calls shared by both adapters when running on the local driver.

    def __init__(self, infrastructure: LocalInfrastructure | None = None) -> None:
        self._infra = infrastructure or get_local_infrastructure()

    @property
    def infrastructure(self) -> LocalInfrastructure:
        return self._infra

    async def list_resources(self, handle: DeploymentHandle) -> list[str]:
        return [resource.resource_id for resource in self._infra.resources_for(handle.deployment_id)]

    async def health_check(self, handle: DeploymentHandle) -> HealthStatus:
        return HealthStatus(self._infra.health(handle.deployment_id))

    async def read_entities(self, handle: DeploymentHandle) -> dict[str, list[dict[str, Any]]]:
        return self._infra.read_entities(handle.deployment_id)

    async def entity_relations(self, handle: DeploymentHandle) -> EntityRelations:
        return self._infra.entity_relations(handle.deployment_id)

    async def read_time_series(
        self, handle: DeploymentHandle, *, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        return self._infra.read_time_series(handle.deployment_id, since=since)

    async def upsert_entities(
        self,
        handle: DeploymentHandle,
        *,
        collection: str,
        records: list[dict[str, Any]],
        relations: EntityRelations,
    ) -> int:
        return self._infra.upsert_entities(
            handle.deployment_id,
            collection=collection,
            records=records,
            relations=relations,
        )

    async def upsert_time_series(self, handle: DeploymentHandle, *, rows: list[dict[str, Any]]) -> int:
        return self._infra.upsert_time_series(handle.deployment_id, rows=rows)

    async def purge_tenant_data(self, handle: DeploymentHandle) -> None:
        self._infra.purge(handle.deployment_id)

    async def count_records(self, handle: DeploymentHandle) -> dict[str, Any]:
        return self._infra.count_records(handle.deployment_id)

    async def collect_usage(self, handle: DeploymentHandle) -> dict[str, Any]:
        return self._infra.collect_usage(handle.deployment_id)
