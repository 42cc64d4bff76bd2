from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from tenantshift.core.config import get_settings
from tenantshift.domain.models import MigrationJob
from tenantshift.persistence.db import SessionLocal
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.providers.backends.factory import get_backend
from tenantshift.providers.backends.local import get_local_infrastructure
from tenantshift.services.lifecycle import resume_stale_jobs
from tenantshift.services.orchestrator import MigrationRunner
from tenantshift.services.telemetry import counters_snapshot
from tenantshift.tests.utils.tenants import create_tenant, load_job, seed_tenant_data, trigger_job


class SimulatedCrash(BaseException):
    # Not an Exception: the runner must not get a chance to roll back.
    pass


class _CrashingBackend:
    def __init__(self, inner, crash_on_call: int) -> None:
        self._inner = inner
        self._crash_on_call = crash_on_call
        self._calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def upsert_time_series(self, handle, *, rows):
        self._calls += 1
        if self._calls == self._crash_on_call:
            raise SimulatedCrash()
        return await self._inner.upsert_time_series(handle, rows=rows)


def _crashing_resolver(crash_on_call: int):
    wrappers: dict[str, _CrashingBackend] = {}

    def _resolve(kind):
        key = getattr(kind, "value", kind)
        if key not in wrappers:
            wrappers[key] = _CrashingBackend(get_backend(kind), crash_on_call)
        return wrappers[key]

    return _resolve


async def _crash_mid_import(monkeypatch) -> tuple[str, str, dict[str, int]]:
    monkeypatch.setenv("IMPORT_BATCH_SIZE", "2")
    get_settings.cache_clear()
    tenant_id, source_id = await create_tenant()
    seeded = seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)
    with pytest.raises(SimulatedCrash):
        await MigrationRunner(backend_resolver=_crashing_resolver(3)).run(job_id)
    return tenant_id, job_id, seeded


@pytest.mark.asyncio
async def test_crashed_job_resumes_from_last_committed_batch(monkeypatch) -> None:
    _, job_id, seeded = await _crash_mid_import(monkeypatch)
    crashed = await load_job(job_id)
    assert crashed.state == "importing"
    assert crashed.import_cursor == {"structured_done": True, "batches_committed": 2, "total_batches": 5}

    job = await MigrationRunner().run(job_id)

    assert job.state == "completed"
    infra = get_local_infrastructure()
    # Every entity and every row written exactly once across both runs.
    assert infra.write_counts[job.target_deployment_id] == seeded["entities"] + seeded["rows"]
    assert infra.count_records(job.target_deployment_id)["time_series"] == seeded["rows"]


@pytest.mark.asyncio
async def test_stale_jobs_are_picked_up_by_the_sweep(monkeypatch) -> None:
    _, job_id, _ = await _crash_mid_import(monkeypatch)
    async with SessionLocal() as session:
        await session.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id)
            .values(updated_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        await session.commit()

    async with SessionLocal() as session:
        resumed = await resume_stale_jobs(session)

    assert resumed == [job_id]
    assert counters_snapshot()["migrations_resumed_total"] == 1
    # Inline execution mode runs the resumed job to completion.
    assert (await load_job(job_id)).state == "completed"


@pytest.mark.asyncio
async def test_recent_jobs_are_not_treated_as_stale(monkeypatch) -> None:
    _, job_id, _ = await _crash_mid_import(monkeypatch)
    async with SessionLocal() as session:
        assert await resume_stale_jobs(session) == []
    assert (await load_job(job_id)).state == "importing"


class _SlowValidationRunner(MigrationRunner):
    # Backdates its own row, then stalls long enough for several heartbeats.
    def __init__(self, pause_s: float) -> None:
        super().__init__()
        self._pause_s = pause_s
        self.stale_seen: list[str] | None = None

    async def _validate(self, session, job):
        async with SessionLocal() as side:
            await side.execute(
                update(MigrationJob)
                .where(MigrationJob.id == job.id)
                .values(updated_at=datetime.now(timezone.utc) - timedelta(hours=1))
            )
            await side.commit()
        await asyncio.sleep(self._pause_s)
        async with SessionLocal() as side:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=get_settings().migration_stale_after_s)
            self.stale_seen = [stale.id for stale in await jobs_repo.list_stale_jobs(side, updated_before=cutoff)]
        return await super()._validate(session, job)


@pytest.mark.asyncio
async def test_running_job_heartbeat_keeps_it_out_of_stale_sweep(monkeypatch) -> None:
    monkeypatch.setenv("MIGRATION_HEARTBEAT_INTERVAL_S", "0.02")
    get_settings.cache_clear()
    tenant_id, source_id = await create_tenant()
    seed_tenant_data(source_id)
    job_id = await trigger_job(tenant_id)

    runner = _SlowValidationRunner(pause_s=0.3)
    job = await runner.run(job_id)

    assert job.state == "completed"
    assert runner.stale_seen == []
