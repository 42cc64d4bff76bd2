from __future__ import annotations

import argparse
import asyncio
import sys

from tenantshift.core.errors import TenantShiftError
from tenantshift.domain.types import BackendKind, JobKind
from tenantshift.persistence.db import SessionLocal
from tenantshift.services.migration_queue import enqueue_migration
from tenantshift.services.orchestrator import force_migration


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Force a migration for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument(
        "--target",
        default=None,
        choices=[kind.value for kind in BackendKind],
        help="Target backend; defaults to the current recommendation",
    )
    parser.add_argument(
        "--kind",
        default=None,
        choices=[kind.value for kind in JobKind],
        help="Migration kind; derived from the target when omitted",
    )
    parser.add_argument("--reason", default=None, help="Free-form reason recorded on the job")
    parser.add_argument("--operator", default="cli", help="Operator identity for the audit trail")
    return parser


async def _trigger(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        job = await force_migration(
            session,
            tenant_id=args.tenant,
            target_backend=BackendKind(args.target) if args.target else None,
            kind=JobKind(args.kind) if args.kind else None,
            requested_by=args.operator,
            reason=args.reason,
        )
        job_id = job.id
    queued_as = await enqueue_migration(job_id)
    print(f"job_id={job_id}")
    print(f"queued_as={queued_as}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_trigger(args))
    except TenantShiftError as exc:
        print(f"trigger_migration failed: {exc.code}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
