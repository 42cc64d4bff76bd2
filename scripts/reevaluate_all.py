from __future__ import annotations

import argparse
import asyncio
import json

from tenantshift.persistence.db import SessionLocal
from tenantshift.services.reevaluation import reevaluate_all


async def reevaluate(*, dry_run: bool) -> None:
    async with SessionLocal() as session:
        summary = await reevaluate_all(session, dry_run=dry_run)
    print(json.dumps({**summary.to_dict(), "dry_run": dry_run}, indent=2, sort_keys=True))


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one placement re-evaluation pass over all tenants")
    parser.add_argument("--dry-run", action="store_true", help="Evaluate only; start no migrations")
    args = parser.parse_args()
    asyncio.run(reevaluate(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
