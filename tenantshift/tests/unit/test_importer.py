from __future__ import annotations

import pytest

from tenantshift.core.errors import ImportBatchError, ProviderError, TransferError
from tenantshift.domain.types import BackendKind, DeploymentHandle
from tenantshift.providers.backends.local import get_local_infrastructure
from tenantshift.providers.backends.shared_cluster import SharedClusterBackend
from tenantshift.services.transfer.importer import import_package, record_order, total_batches
from tenantshift.services.transfer.package import build_package


def _handle(deployment_id: str) -> DeploymentHandle:
    return DeploymentHandle(
        deployment_id=deployment_id,
        backend_kind=BackendKind.SHARED_CLUSTER,
        endpoint="shared-1.shared.local",
        resources={},
    )


def _package(row_count: int = 10):
    rows = [
        {"series": "load", "entity_id": "node-1", "ts": f"2026-02-01T00:{minute:02d}:00+00:00", "value": minute}
        for minute in range(row_count)
    ]
    return build_package(
        package_id="pkg_import",
        tenant_id="t-import",
        job_id="mig_import",
        kind="upgrade",
        source_deployment_id="dep_src",
        collections={
            "sites": [{"id": "s1"}, {"id": "s2"}],
            "nodes": [{"id": "node-1", "site_id": "s1"}, {"id": "node-2", "site_id": "s2"}],
        },
        relations={"nodes": {"site_id": "sites"}},
        rows=rows,
        retention_days=None,
        retention_cutoff=None,
    )


@pytest.mark.asyncio
async def test_import_resumes_after_failed_batch_without_duplicates() -> None:
    infra = get_local_infrastructure()
    infra.register_deployment("dep_target", "t-import")
    infra.fail_import_batch("t-import", 3)
    backend = SharedClusterBackend(infra)
    package = _package()
    checkpoints: list[dict] = []

    async def _checkpoint(cursor: dict) -> None:
        checkpoints.append(cursor)

    assert total_batches(package, 2) == 5
    with pytest.raises(ImportBatchError) as excinfo:
        await import_package(
            backend=backend,
            handle=_handle("dep_target"),
            package=package,
            batch_size=2,
            checkpoint=_checkpoint,
        )
    assert "batch 3 of 5" in str(excinfo.value)
    cursor = checkpoints[-1]
    assert cursor["structured_done"] is True
    assert cursor["batches_committed"] == 2

    final = await import_package(
        backend=backend,
        handle=_handle("dep_target"),
        package=package,
        batch_size=2,
        cursor=cursor,
    )
    assert final["batches_committed"] == 5
    counts = infra.count_records("dep_target")
    assert counts == {"entities": {"nodes": 2, "sites": 2}, "time_series": 10}
    # Structured records once, every row once: the resume replayed nothing twice.
    assert infra.write_counts["dep_target"] == 4 + 10


@pytest.mark.asyncio
async def test_reimporting_a_package_is_idempotent() -> None:
    infra = get_local_infrastructure()
    backend = SharedClusterBackend(infra)
    package = _package(row_count=6)
    for _ in range(2):
        await import_package(backend=backend, handle=_handle("dep_twice"), package=package, batch_size=4)
    counts = infra.count_records("dep_twice")
    assert counts["time_series"] == 6
    assert counts["entities"] == {"nodes": 2, "sites": 2}


@pytest.mark.asyncio
async def test_child_records_need_their_parents() -> None:
    infra = get_local_infrastructure()
    backend = SharedClusterBackend(infra)
    with pytest.raises(ProviderError):
        await backend.upsert_entities(
            _handle("dep_fk"),
            collection="nodes",
            records=[{"id": "node-9", "site_id": "missing"}],
            relations={"nodes": {"site_id": "sites"}},
        )


# Ids sort child-first on purpose: g-3 is the root, g-1 hangs off it, g-2 off g-1.
_GROUPS = [
    {"id": "g-1", "parent_id": "g-3"},
    {"id": "g-2", "parent_id": "g-1"},
    {"id": "g-3", "parent_id": None},
]
_GROUP_RELATIONS = {"groups": {"parent_id": "groups"}}


def test_self_referencing_records_are_ordered_parent_first() -> None:
    ordered = record_order("groups", _GROUPS, _GROUP_RELATIONS)
    assert [record["id"] for record in ordered] == ["g-3", "g-1", "g-2"]
    # Collections without a self reference keep their export order.
    assert record_order("sites", _GROUPS, {"nodes": {"site_id": "sites"}}) is _GROUPS


def test_parent_cycles_inside_a_collection_are_rejected() -> None:
    looped = [{"id": "a", "parent_id": "b"}, {"id": "b", "parent_id": "a"}]
    with pytest.raises(TransferError):
        record_order("groups", looped, _GROUP_RELATIONS)


@pytest.mark.asyncio
@pytest.mark.parametrize("batch_size", [1, 10])
async def test_hierarchical_collection_imports_in_one_or_many_chunks(batch_size: int) -> None:
    infra = get_local_infrastructure()
    backend = SharedClusterBackend(infra)
    package = build_package(
        package_id="pkg_groups",
        tenant_id="t-groups",
        job_id="mig_groups",
        kind="upgrade",
        source_deployment_id="dep_src",
        collections={"groups": list(_GROUPS)},
        relations=_GROUP_RELATIONS,
        rows=[],
        retention_days=None,
        retention_cutoff=None,
    )

    cursor = await import_package(backend=backend, handle=_handle("dep_groups"), package=package, batch_size=batch_size)

    assert cursor["structured_done"] is True
    assert infra.count_records("dep_groups")["entities"] == {"groups": 3}
