from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantshift.core.errors import TenantShiftError
from tenantshift.persistence.db import SessionLocal
from tenantshift.services.placement import evaluate_tenant


async def _evaluate(tenant_id: str) -> int:
    # Read-only: prints the recommendation without starting anything.
    async with SessionLocal() as session:
        evaluation = await evaluate_tenant(session, tenant_id)
    decision = evaluation.decision
    print(
        json.dumps(
            {
                "tenant_id": tenant_id,
                "current_backend": evaluation.current_backend.value,
                "recommended_backend": decision.backend_kind.value,
                "tier": decision.tier,
                "confidence": round(decision.confidence, 4),
                "scores": decision.scores,
                "should_migrate": evaluation.should_migrate,
                "migration_kind": evaluation.kind.value if evaluation.kind else None,
                "reason": evaluation.reason,
            },
            indent=2,
            sort_keys=True,
        )
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Show the placement recommendation for one tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    args = parser.parse_args()
    try:
        return asyncio.run(_evaluate(args.tenant))
    except TenantShiftError as exc:
        print(f"evaluate_tenant failed: {exc.code}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
