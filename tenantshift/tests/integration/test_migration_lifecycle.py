from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantshift.core.config import get_settings
from tenantshift.domain.models import AuditEvent, MigrationLock
from tenantshift.domain.types import FORWARD_STATES, BackendKind, JobKind
from tenantshift.persistence.db import SessionLocal
from tenantshift.providers.backends.local import get_local_infrastructure
from tenantshift.providers.dns.local import get_local_dns_state
from tenantshift.services.cutover import routing_domain_for
from tenantshift.services.orchestrator import MigrationRunner
from tenantshift.services.telemetry import counters_snapshot
from tenantshift.tests.utils.tenants import (
    LARGE_PROFILE,
    create_tenant,
    job_states,
    load_deployment,
    load_tenant,
    seed_tenant_data,
    trigger_job,
)


async def _lock_for(tenant_id: str) -> MigrationLock | None:
    async with SessionLocal() as session:
        return await session.get(MigrationLock, tenant_id)


@pytest.mark.asyncio
async def test_upgrade_moves_tenant_to_dedicated_instance(notifications) -> None:
    tenant_id, source_id = await create_tenant()
    seeded = seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    assert await job_states(job_id) == [state.value for state in FORWARD_STATES]
    tenant = await load_tenant(tenant_id)
    source = await load_deployment(source_id)
    target = await load_deployment(job.target_deployment_id)
    assert tenant.current_deployment_id == target.id
    assert target.status == "active"
    assert target.backend_kind == BackendKind.DEDICATED_INSTANCE.value
    assert target.tier == "standard"
    # The old deployment drains for the grace window instead of disappearing at once.
    assert source.status == "draining"
    assert source.decommission_after is not None

    infra = get_local_infrastructure()
    assert infra.count_records(target.id) == infra.count_records(source_id)
    assert infra.count_records(target.id)["time_series"] == seeded["rows"]
    record = get_local_dns_state().records[routing_domain_for(tenant_id)]
    assert record.target == target.endpoint
    assert record.ttl == get_settings().cutover_normal_ttl_s
    assert job.metadata_json["verification"]["ok"] is True
    assert await _lock_for(tenant_id) is None
    assert notifications.kinds(tenant_id) == ["migration.started", "migration.completed"]

    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEvent.event_type).where(AuditEvent.tenant_id == tenant_id, AuditEvent.resource_id == job_id)
        )
        event_types = set(result.scalars().all())
    assert {"migration.requested", "migration.state.cutting_over", "migration.state.completed"} <= event_types


@pytest.mark.asyncio
async def test_downgrade_carries_only_recent_history() -> None:
    tenant_id, source_id = await create_tenant(**LARGE_PROFILE)
    source = await load_deployment(source_id)
    assert source.backend_kind == BackendKind.DEDICATED_INSTANCE.value
    seed_tenant_data(source_id, row_ages_days=[1, 2, 3, 45, 60, 120])

    job_id = await trigger_job(tenant_id, target=BackendKind.SHARED_CLUSTER, kind=JobKind.DOWNGRADE)
    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    assert job.target_tier == "business"
    assert job.retention_days == 30
    counts = get_local_infrastructure().count_records(job.target_deployment_id)
    assert counts["time_series"] == 3
    assert counts["entities"] == {"devices": 4, "sites": 2}


@pytest.mark.asyncio
async def test_upgrade_carries_hierarchical_collection(monkeypatch) -> None:
    monkeypatch.setenv("IMPORT_BATCH_SIZE", "2")
    get_settings.cache_clear()
    tenant_id, source_id = await create_tenant()
    # Export reads ids in sorted order, which puts children ahead of their parents here.
    get_local_infrastructure().seed(
        source_id,
        entities={
            "groups": [
                {"id": "a-child", "parent_id": "m-mid"},
                {"id": "m-mid", "parent_id": "z-root"},
                {"id": "z-root", "parent_id": None},
            ]
        },
        relations={"groups": {"parent_id": "groups"}},
    )

    job = await MigrationRunner().run(await trigger_job(tenant_id))

    assert job.state == "completed", job.error_message
    infra = get_local_infrastructure()
    assert infra.count_records(job.target_deployment_id)["entities"] == {"groups": 3}


@pytest.mark.asyncio
async def test_failed_import_batch_rolls_back_to_untouched_source(monkeypatch, notifications) -> None:
    monkeypatch.setenv("IMPORT_BATCH_SIZE", "2")
    get_settings.cache_clear()
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    # Ten rows in batches of two: five batches, the third one fails.
    infra.fail_import_batch(tenant_id, 3)
    job_id = await trigger_job(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "rolled_back"
    assert job.error_code == "IMPORT_BATCH_FAILED"
    assert job.import_cursor["batches_committed"] == 2
    states = await job_states(job_id)
    assert states[-2:] == ["rolling_back", "rolled_back"]
    assert "cutting_over" not in states

    assert infra.resources_for(job.target_deployment_id) == []
    assert job.target_deployment_id not in infra.datasets
    target = await load_deployment(job.target_deployment_id)
    assert target.status == "decommissioned"
    source = await load_deployment(source_id)
    assert source.status == "active"
    assert (await load_tenant(tenant_id)).current_deployment_id == source_id
    assert infra.write_counts[source_id] == 0
    assert get_local_dns_state().records[source.routing_domain].target == source.endpoint
    assert job.metadata_json["rollback"]["ok"] is True
    assert await _lock_for(tenant_id) is None
    assert notifications.kinds(tenant_id) == ["migration.started", "migration.rolled_back"]


@pytest.mark.asyncio
async def test_integrity_mismatch_rolls_back() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    infra.drop_time_series_rows(tenant_id, 2)
    job_id = await trigger_job(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "rolled_back"
    assert job.error_code == "TRANSFER_INTEGRITY_MISMATCH"
    assert "time-series count mismatch: expected 10, found 8" in job.error_message
    assert "cutting_over" not in await job_states(job_id)
    assert (await load_deployment(source_id)).status == "active"
    assert infra.resources_for(job.target_deployment_id) == []


@pytest.mark.asyncio
async def test_cutover_timeout_restores_routing_to_source() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    domain = routing_domain_for(tenant_id)
    get_local_dns_state().never_propagate(domain)
    job_id = await trigger_job(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "rolled_back"
    assert job.error_code == "CUTOVER_TIMEOUT"
    states = await job_states(job_id)
    assert "cutting_over" in states
    assert "cleaning_up" not in states
    source = await load_deployment(source_id)
    record = get_local_dns_state().records[domain]
    assert record.target == source.endpoint
    assert record.ttl == get_settings().cutover_normal_ttl_s
    assert job.metadata_json["rollback"]["routing_restored"] is True
    infra = get_local_infrastructure()
    assert infra.write_counts[source_id] == 0
    assert infra.resources_for(job.target_deployment_id) == []
    assert source.status == "active"
    assert (await load_tenant(tenant_id)).current_deployment_id == source_id


@pytest.mark.asyncio
async def test_provisioning_exhaustion_rolls_back_and_frees_the_tenant() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    infra.fail_next_provisions(tenant_id, 3)
    first_id = await trigger_job(tenant_id)

    first = await MigrationRunner().run(first_id)

    assert first.state == "rolled_back"
    assert first.error_code == "PROVISIONING_FAILED"
    assert counters_snapshot()["retries_total.provision"] == 2
    assert infra.resources_for(first.target_deployment_id) == []

    # The lock went with the rollback, so the tenant can migrate again.
    second_id = await trigger_job(tenant_id)
    second = await MigrationRunner().run(second_id)
    assert second.state == "completed"


@pytest.mark.asyncio
async def test_rollback_failure_ends_in_failed_state(monkeypatch, notifications) -> None:
    monkeypatch.setenv("IMPORT_BATCH_SIZE", "2")
    get_settings.cache_clear()
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    infra = get_local_infrastructure()
    infra.fail_import_batch(tenant_id, 3)
    infra.refuse_deletion(tenant_id)
    job_id = await trigger_job(tenant_id)

    job = await MigrationRunner().run(job_id)

    assert job.state == "failed"
    # The original failure stays on the job; the rollback failure is recorded beside it.
    assert job.error_code == "IMPORT_BATCH_FAILED"
    assert job.metadata_json["rollback"]["ok"] is False
    assert job.completed_at is not None
    assert counters_snapshot()["migrations_failed_total"] == 1
    assert notifications.kinds(tenant_id)[-1] == "migration.failed"
    assert await _lock_for(tenant_id) is None
    assert (await load_tenant(tenant_id)).current_deployment_id == source_id
