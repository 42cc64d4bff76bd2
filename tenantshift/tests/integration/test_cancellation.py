from __future__ import annotations

import pytest
from sqlalchemy import update

from tenantshift.core.errors import CancellationNotAllowedError
from tenantshift.domain.models import MigrationJob
from tenantshift.persistence.db import SessionLocal
from tenantshift.providers.backends.local import get_local_infrastructure
from tenantshift.services.orchestrator import MigrationRunner, request_cancellation
from tenantshift.tests.utils.tenants import (
    create_tenant,
    job_states,
    load_deployment,
    load_tenant,
    seed_tenant_data,
    trigger_job,
)


async def _cancel(job_id: str) -> MigrationJob:
    async with SessionLocal() as session:
        return await request_cancellation(session, job_id=job_id, requested_by="ops@example.test")


class _CancelDuringImport(MigrationRunner):
    # An operator cancels while the import step is running.
    async def _import(self, session, job):
        await _cancel(job.id)
        return await super()._import(session, job)


@pytest.mark.asyncio
async def test_cancelling_a_pending_job_rolls_it_back(notifications) -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)

    flagged = await _cancel(job_id)
    assert flagged.cancel_requested is True
    assert flagged.state == "pending"

    job = await MigrationRunner().run(job_id)

    assert job.state == "rolled_back"
    assert job.error_code == "MIGRATION_CANCELLED"
    assert await job_states(job_id) == ["pending", "rolling_back", "rolled_back"]
    assert (await load_tenant(tenant_id)).current_deployment_id == source_id
    assert notifications.kinds(tenant_id) == ["migration.started", "migration.rolled_back"]


@pytest.mark.asyncio
async def test_cancel_is_honoured_at_the_next_step_boundary() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)

    job = await _CancelDuringImport().run(job_id)

    assert job.state == "rolled_back"
    assert job.error_code == "MIGRATION_CANCELLED"
    states = await job_states(job_id)
    # The import in flight finishes; nothing after it starts.
    assert states[-3:] == ["verifying", "rolling_back", "rolled_back"]
    assert "cutting_over" not in states
    infra = get_local_infrastructure()
    assert infra.resources_for(job.target_deployment_id) == []
    assert infra.write_counts[source_id] == 0
    assert (await load_deployment(source_id)).status == "active"


@pytest.mark.asyncio
async def test_cancel_refused_once_cutover_started() -> None:
    tenant_id, _ = await create_tenant()
    job_id = await trigger_job(tenant_id)
    async with SessionLocal() as session:
        await session.execute(
            update(MigrationJob).where(MigrationJob.id == job_id).values(state="cutting_over")
        )
        await session.commit()

    with pytest.raises(CancellationNotAllowedError):
        await _cancel(job_id)

    async with SessionLocal() as session:
        job = await session.get(MigrationJob, job_id)
        assert job.cancel_requested is False


@pytest.mark.asyncio
async def test_cancel_refused_for_finished_job() -> None:
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)
    assert (await MigrationRunner().run(job_id)).state == "completed"

    with pytest.raises(CancellationNotAllowedError):
        await _cancel(job_id)
