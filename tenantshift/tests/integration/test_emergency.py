from __future__ import annotations

import pytest

from tenantshift.domain.types import BackendKind, JobKind
from tenantshift.persistence.db import SessionLocal
from tenantshift.providers.backends.local import get_local_infrastructure
from tenantshift.services.followup_sync import run_due_followup_syncs, run_followup_sync
from tenantshift.services.orchestrator import MigrationRunner, force_migration
from tenantshift.services.telemetry import counters_snapshot
from tenantshift.tests.utils.tenants import (
    create_tenant,
    load_deployment,
    load_job,
    load_tenant,
    seed_tenant_data,
    trigger_job,
)


async def _emergency(tenant_id: str) -> str:
    async with SessionLocal() as session:
        job = await force_migration(
            session,
            tenant_id=tenant_id,
            kind=JobKind.EMERGENCY,
            requested_by="oncall@example.test",
            reason="source cluster failing",
        )
        return job.id


async def _followup(job_id: str) -> str:
    async with SessionLocal() as session:
        return await run_followup_sync(session, job_id)


@pytest.mark.asyncio
async def test_emergency_accepts_integrity_mismatch_and_backfills_later() -> None:
    tenant_id, source_id = await create_tenant()
    seeded = seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    infra.drop_time_series_rows(tenant_id, 2)
    job_id = await _emergency(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    assert job.kind == "emergency"
    assert job.forced is True
    assert job.target_backend == BackendKind.DEDICATED_INSTANCE.value
    assert job.metadata_json["verification"]["ok"] is False
    assert job.metadata_json["followup_sync"] == "scheduled"
    assert counters_snapshot()["emergency_integrity_warnings_total"] == 1
    assert infra.count_records(job.target_deployment_id)["time_series"] == seeded["rows"] - 2

    assert await _followup(job_id) == "completed"
    assert infra.count_records(job.target_deployment_id)["time_series"] == seeded["rows"]
    assert (await load_job(job_id)).metadata_json["followup_sync_detail"]["entities_backfilled"] == 0
    # A finished follow-up is not repeated.
    assert await _followup(job_id) == "completed"


@pytest.mark.asyncio
async def test_emergency_from_unreadable_source_carries_empty_package() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    infra.set_unreachable(source_id, reads_fail=True)
    job_id = await _emergency(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    export = job.metadata_json["export"]
    assert export["best_effort"] is True
    assert export["sections"]["time_series"]["counts"] == {"rows": 0}
    assert counters_snapshot()["emergency_export_fallbacks_total"] == 1
    assert (await load_tenant(tenant_id)).current_deployment_id == job.target_deployment_id
    assert infra.count_records(job.target_deployment_id)["time_series"] == 0

    # Still down: the sync stays scheduled and is retried by the sweep.
    async with SessionLocal() as session:
        assert await run_due_followup_syncs(session) == {job_id: "scheduled"}

    infra.set_healthy(source_id)
    async with SessionLocal() as session:
        assert await run_due_followup_syncs(session) == {job_id: "completed"}
    assert infra.count_records(job.target_deployment_id) == infra.count_records(source_id)
    async with SessionLocal() as session:
        assert await run_due_followup_syncs(session) == {}


@pytest.mark.asyncio
async def test_emergency_replays_retained_package_when_source_is_unreadable() -> None:
    tenant_id, shared_id = await create_tenant()
    seeded = seed_tenant_data(shared_id)
    upgrade = await MigrationRunner().run(await trigger_job(tenant_id))
    assert upgrade.state == "completed"
    dedicated_id = upgrade.target_deployment_id

    infra = get_local_infrastructure()
    infra.set_unreachable(dedicated_id, reads_fail=True)
    job_id = await _emergency(tenant_id)
    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    assert job.target_backend == BackendKind.SHARED_CLUSTER.value
    assert job.metadata_json["export"]["best_effort"] is True
    assert upgrade.export_package_id in job.metadata_json["export"]["notes"][0]
    assert infra.count_records(job.target_deployment_id)["time_series"] == seeded["rows"]
    assert (await load_deployment(dedicated_id)).status == "draining"
