from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import JobNotFoundError
from tenantshift.domain.models import MigrationJob
from tenantshift.domain.types import TERMINAL_STATES


_TERMINAL_VALUES = [state.value for state in TERMINAL_STATES]


async def get_job(session: AsyncSession, job_id: str) -> MigrationJob | None:
    return await session.get(MigrationJob, job_id)


async def require_job(session: AsyncSession, job_id: str) -> MigrationJob:
    job = await session.get(MigrationJob, job_id)
    if job is None:
        raise JobNotFoundError(f"Unknown migration job: {job_id}")
    return job


async def get_active_job_for_tenant(session: AsyncSession, tenant_id: str) -> MigrationJob | None:
    result = await session.execute(
        select(MigrationJob)
        .where(
            MigrationJob.tenant_id == tenant_id,
            MigrationJob.state.not_in(_TERMINAL_VALUES),
        )
        .order_by(MigrationJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_jobs_for_tenant(session: AsyncSession, tenant_id: str, *, limit: int = 20) -> list[MigrationJob]:
    result = await session.execute(
        select(MigrationJob)
        .where(MigrationJob.tenant_id == tenant_id)
        .order_by(MigrationJob.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_stale_jobs(session: AsyncSession, *, updated_before: datetime) -> list[MigrationJob]:
    # Non-terminal jobs whose owner stopped advancing them; candidates for resumption.
    result = await session.execute(
        select(MigrationJob)
        .where(
            MigrationJob.state.not_in(_TERMINAL_VALUES),
            MigrationJob.updated_at <= updated_before,
        )
        .order_by(MigrationJob.updated_at)
    )
    return list(result.scalars().all())


async def list_followup_candidates(session: AsyncSession) -> list[MigrationJob]:
    # Filtering on the JSON flag happens in Python to stay dialect-neutral.
    result = await session.execute(
        select(MigrationJob)
        .where(MigrationJob.kind == "emergency", MigrationJob.state == "completed")
        .order_by(MigrationJob.completed_at)
    )
    return [
        job
        for job in result.scalars().all()
        if (job.metadata_json or {}).get("followup_sync") == "scheduled"
    ]
