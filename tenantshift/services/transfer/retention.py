from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

from tenantshift.core.config import get_settings
from tenantshift.domain.types import JobKind


def tier_retention_days() -> dict[str, int]:
    settings = get_settings()
    raw = json.loads(settings.tier_retention_days_json or "{}")
    return {str(tier): int(days) for tier, days in raw.items()}


def retention_days_for(kind: JobKind | str, target_tier: str) -> int | None:
    """Days of time-series history a migration carries; ``None`` carries everything.

    Emergency moves carry everything available. Downgrades are capped at the
    downgrade window no matter how much history existed, and never exceed
    the target tier's own window. Upgrades follow the target tier.
    """
    settings = get_settings()
    job_kind = JobKind(kind)
    if job_kind == JobKind.EMERGENCY:
        return None
    tier_days = tier_retention_days().get(target_tier, 0)
    if job_kind == JobKind.DOWNGRADE:
        window = settings.downgrade_retention_days
        return min(window, tier_days) if tier_days > 0 else window
    return tier_days if tier_days > 0 else None


def retention_cutoff(days: int | None, *, now: datetime | None = None) -> datetime | None:
    if days is None:
        return None
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)
