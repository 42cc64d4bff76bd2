from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import MigrationExclusivityError
from tenantshift.domain.models import MigrationJob, MigrationLock
from tenantshift.domain.types import is_terminal


logger = logging.getLogger(__name__)


async def _clear_orphaned_lock(session: AsyncSession, tenant_id: str) -> bool:
    # A lock whose job is gone or terminal was left behind by a crash between finish and release.
    lock = await session.get(MigrationLock, tenant_id)
    if lock is None:
        return True
    job = await session.get(MigrationJob, lock.job_id)
    if job is not None and not is_terminal(job.state):
        return False
    await session.delete(lock)
    await session.commit()
    logger.warning("migration_lock_reclaimed tenant_id=%s stale_job_id=%s", tenant_id, lock.job_id)
    return True


async def create_job_with_lock(
    session: AsyncSession,
    *,
    job: MigrationJob,
    owner: str | None = None,
) -> MigrationJob:
    """Persist ``job`` together with the tenant's exclusivity lock in one transaction.

    The lock row's primary key is the tenant id, so across any number of
    orchestrator processes exactly one insert wins. The loser sees an
    IntegrityError and nothing it wrote survives.
    """
    for attempt in (1, 2):
        session.add(job)
        session.add(
            MigrationLock(
                tenant_id=job.tenant_id,
                job_id=job.id,
                owner=owner,
                acquired_at=datetime.now(timezone.utc),
            )
        )
        try:
            await session.commit()
            return job
        except IntegrityError:
            await session.rollback()
            if attempt == 2 or not await _clear_orphaned_lock(session, job.tenant_id):
                raise MigrationExclusivityError(
                    f"A migration is already in progress for tenant {job.tenant_id}"
                ) from None
    raise MigrationExclusivityError(f"A migration is already in progress for tenant {job.tenant_id}")


async def release_lock(session: AsyncSession, *, tenant_id: str, job_id: str) -> None:
    # Only the owning job may release; a stale release never frees someone else's lock.
    await session.execute(
        delete(MigrationLock).where(MigrationLock.tenant_id == tenant_id, MigrationLock.job_id == job_id)
    )
    await session.commit()


async def holds_lock(session: AsyncSession, *, tenant_id: str, job_id: str) -> bool:
    lock = await session.get(MigrationLock, tenant_id)
    return lock is not None and lock.job_id == job_id
