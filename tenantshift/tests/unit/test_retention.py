from __future__ import annotations

from datetime import datetime, timedelta, timezone

from tenantshift.domain.types import JobKind
from tenantshift.services.transfer.retention import retention_cutoff, retention_days_for


def test_emergency_carries_all_history() -> None:
    assert retention_days_for(JobKind.EMERGENCY, "free") is None
    assert retention_days_for("emergency", "enterprise") is None


def test_downgrade_is_capped_regardless_of_source_history() -> None:
    assert retention_days_for(JobKind.DOWNGRADE, "business") == 30
    # A tier with a shorter window than the downgrade cap keeps its own window.
    assert retention_days_for(JobKind.DOWNGRADE, "free") == 7


def test_upgrade_follows_target_tier_window() -> None:
    assert retention_days_for(JobKind.UPGRADE, "performance") == 365
    # Zero means the tier keeps everything.
    assert retention_days_for(JobKind.UPGRADE, "enterprise") is None


def test_retention_cutoff() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert retention_cutoff(None, now=now) is None
    assert retention_cutoff(30, now=now) == now - timedelta(days=30)
