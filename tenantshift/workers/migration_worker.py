from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from tenantshift.core.config import get_settings
from tenantshift.core.logging import configure_logging
from tenantshift.persistence.db import SessionLocal
from tenantshift.services.followup_sync import run_due_followup_syncs
from tenantshift.services.lifecycle import decommission_due_deployments, resume_stale_jobs
from tenantshift.services.migration_queue import (
    MigrationJobPayload,
    process_migration_job,
    set_worker_heartbeat,
)
from tenantshift.services.reevaluation import reevaluate_all
from tenantshift.services.transfer.package import prune_expired_packages
from tenantshift.services.usage import collect_usage_snapshots, prune_usage_snapshots


logger = logging.getLogger(__name__)


async def run_migration_job(ctx, payload: dict) -> str:
    # Parse payloads in the worker to enforce the handoff schema.
    job_payload = MigrationJobPayload.model_validate(payload)
    logger.info("migration_job_started job_id=%s try=%s", job_payload.job_id, ctx.get("job_try", 1))
    return await process_migration_job(job_payload)


async def reevaluate_placements(ctx) -> dict:
    # Fresh usage first so the decision engine scores current load.
    async with SessionLocal() as session:
        await collect_usage_snapshots(session)
    async with SessionLocal() as session:
        summary = await reevaluate_all(session)
    return summary.to_dict()


async def sweep_lifecycle(ctx) -> dict:
    async with SessionLocal() as session:
        resumed = await resume_stale_jobs(session)
    async with SessionLocal() as session:
        decommissioned = await decommission_due_deployments(session)
    async with SessionLocal() as session:
        followups = await run_due_followup_syncs(session)
    return {"resumed": resumed, "decommissioned": decommissioned, "followups": followups}


async def prune_retained_data(ctx) -> dict:
    async with SessionLocal() as session:
        packages = await prune_expired_packages(session)
    async with SessionLocal() as session:
        snapshots = await prune_usage_snapshots(session)
    return {"packages": packages, "usage_snapshots": snapshots}


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - keep heartbeat alive across Redis blips
            logger.exception("worker heartbeat failed")
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


def _reevaluation_hours(interval_hours: int) -> set[int]:
    step = min(max(1, interval_hours), 24)
    return set(range(0, 24, step))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.migration_queue_name
    max_tries = max(1, int(settings.migration_max_tries))
    # A migration may legitimately wait out TTLs and propagation polling.
    job_timeout = 6 * 60 * 60
    functions = [run_migration_job]
    cron_jobs = [
        cron(reevaluate_placements, hour=_reevaluation_hours(settings.reevaluation_interval_hours), minute=0),
        cron(sweep_lifecycle, minute=set(range(0, 60, 5))),
        cron(prune_retained_data, hour=3, minute=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
