from __future__ import annotations

from graphlib import CycleError, TopologicalSorter
import logging
from typing import Any, Awaitable, Callable

from tenantshift.core.errors import ImportBatchError, ProviderError, TransferError
from tenantshift.domain.types import DeploymentHandle
from tenantshift.providers.backends.base import BackendAdapter, EntityRelations
from tenantshift.services.telemetry import increment_counter
from tenantshift.services.transfer.package import ExportPackage


logger = logging.getLogger(__name__)

Checkpoint = Callable[[dict[str, Any]], Awaitable[None]]


def collection_order(collections: list[str], relations: EntityRelations) -> list[str]:
    # Parents before children; ties resolved by name so the order is reproducible.
    graph: dict[str, set[str]] = {name: set() for name in collections}
    for child, fks in relations.items():
        if child not in graph:
            continue
        graph[child].update(parent for parent in fks.values() if parent in graph and parent != child)
    sorter = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as exc:
        raise TransferError(f"Entity collections have a dependency cycle: {exc.args[1]}") from exc
    ordered: list[str] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        ordered.extend(ready)
        sorter.done(*ready)
    return ordered


def record_order(collection: str, records: list[dict[str, Any]], relations: EntityRelations) -> list[dict[str, Any]]:
    # A collection that references itself (groups.parent_id -> groups) is ordered parent-before-child too.
    self_fks = [field for field, parent in relations.get(collection, {}).items() if parent == collection]
    if not self_fks:
        return records
    by_id = {str(record["id"]): record for record in records}
    graph: dict[str, set[str]] = {}
    for record_id, record in by_id.items():
        parents = {str(record[field]) for field in self_fks if record.get(field) is not None}
        # Parents outside the package already exist on the target or are missing; the target decides.
        graph[record_id] = {parent for parent in parents if parent in by_id and parent != record_id}
    sorter = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as exc:
        raise TransferError(f"Records in {collection} have a parent cycle: {exc.args[1]}") from exc
    ordered: list[dict[str, Any]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        ordered.extend(by_id[record_id] for record_id in ready)
        sorter.done(*ready)
    return ordered


def _chunks(items: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    size = max(1, size)
    return [items[start : start + size] for start in range(0, len(items), size)]


def total_batches(package: ExportPackage, batch_size: int) -> int:
    return len(_chunks(package.rows, batch_size))


async def import_package(
    *,
    backend: BackendAdapter,
    handle: DeploymentHandle,
    package: ExportPackage,
    batch_size: int,
    cursor: dict[str, Any] | None = None,
    checkpoint: Checkpoint | None = None,
) -> dict[str, Any]:
    """Replay a package into ``handle`` and return the final import cursor.

    Structured data goes first, then time-series rows in fixed-size batches.
    Every write is an upsert, and the cursor records the last committed
    batch, so running this again with the returned or a partial cursor only
    writes what is missing.
    """
    state = {"structured_done": False, "batches_committed": 0}
    state.update(cursor or {})
    batches = _chunks(package.rows, batch_size)
    state["total_batches"] = len(batches)

    if not state["structured_done"]:
        for collection in collection_order(list(package.collections), package.relations):
            ordered = record_order(collection, package.collections[collection], package.relations)
            for records in _chunks(ordered, batch_size):
                try:
                    await backend.upsert_entities(
                        handle,
                        collection=collection,
                        records=records,
                        relations=package.relations,
                    )
                except ProviderError as exc:
                    raise ImportBatchError(f"Structured import failed for collection {collection}") from exc
        state["structured_done"] = True
        if checkpoint is not None:
            await checkpoint(dict(state))

    start = int(state["batches_committed"])
    if start:
        logger.info("import_resumed package_id=%s from_batch=%s", package.package_id, start + 1)
    for index in range(start, len(batches)):
        number = index + 1
        try:
            await backend.upsert_time_series(handle, rows=batches[index])
        except ProviderError as exc:
            increment_counter("import_batch_failures_total")
            raise ImportBatchError(f"Time-series batch {number} of {len(batches)} failed") from exc
        state["batches_committed"] = number
        if checkpoint is not None:
            await checkpoint(dict(state))
        logger.debug("import_batch_committed package_id=%s batch=%s/%s", package.package_id, number, len(batches))

    return state
