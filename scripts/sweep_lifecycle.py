from __future__ import annotations

import asyncio

from tenantshift.persistence.db import SessionLocal
from tenantshift.services.followup_sync import run_due_followup_syncs
from tenantshift.services.lifecycle import decommission_due_deployments, resume_stale_jobs
from tenantshift.services.transfer.package import prune_expired_packages
from tenantshift.services.usage import prune_usage_snapshots


async def sweep() -> None:
    async with SessionLocal() as session:
        resumed = await resume_stale_jobs(session)
    async with SessionLocal() as session:
        decommissioned = await decommission_due_deployments(session)
    async with SessionLocal() as session:
        followups = await run_due_followup_syncs(session)
    async with SessionLocal() as session:
        pruned = await prune_expired_packages(session)
    async with SessionLocal() as session:
        snapshots = await prune_usage_snapshots(session)
    print(f"resumed_jobs={len(resumed)}")
    print(f"decommissioned_deployments={len(decommissioned)}")
    print(f"followup_syncs={len(followups)}")
    print(f"pruned_export_packages={pruned}")
    print(f"pruned_usage_snapshots={snapshots}")


if __name__ == "__main__":
    asyncio.run(sweep())
