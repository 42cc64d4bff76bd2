from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from tenantshift.core.config import get_settings
from tenantshift.services.orchestrator import MigrationRunner


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "tenantshift:worker:heartbeat"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class MigrationJobPayload(BaseModel):
    job_id: str
    # Set when an orphaned job is picked up again by the stale-job sweep.
    resume: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _inline_mode() -> bool:
    return get_settings().migration_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.migration_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    if _inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.llen(_queue_key(get_settings().migration_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if _inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or _utc_now()).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def process_migration_job(payload: MigrationJobPayload) -> str:
    # Worker and inline mode share this path; the runner picks up from the persisted state.
    if payload.resume:
        logger.warning("migration_job_resumed job_id=%s", payload.job_id)
    job = await MigrationRunner().run(payload.job_id)
    return job.state


async def enqueue_migration(job_id: str, *, resume: bool = False) -> str:
    payload = MigrationJobPayload(job_id=job_id, resume=resume)
    settings = get_settings()
    if _inline_mode():
        await process_migration_job(payload)
        return job_id

    redis = await get_redis_pool()
    # Resumptions need a fresh arq id; the original one may still be held by its result.
    arq_job_id = f"{job_id}:resume:{int(_utc_now().timestamp())}" if resume else job_id
    job = await redis.enqueue_job(
        "run_migration_job",
        payload.model_dump(),
        _job_id=arq_job_id,
        _queue_name=settings.migration_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else arq_job_id
