from __future__ import annotations

import pytest

from tenantshift.domain.types import BackendKind, JobKind, TenantProfile
from tenantshift.services.placement import (
    PlacementPolicy,
    evaluate_migration,
    merge_snapshot,
    recommend,
    tier_for,
)


def test_recommend_is_deterministic() -> None:
    profile = TenantProfile(budget=120.0, entity_count=40, latency_requirement_ms=30, peak_concurrency=250)
    first = recommend(profile)
    for _ in range(5):
        again = recommend(profile)
        assert again == first
        assert again.scores == first.scores


def test_small_cheap_tenant_goes_to_shared_cluster() -> None:
    decision = recommend(TenantProfile(budget=20.0, entity_count=5, peak_concurrency=10))
    assert decision.backend_kind == BackendKind.SHARED_CLUSTER
    assert decision.tier == "free"
    assert decision.confidence == 1.0
    assert "low budget" in decision.reason


def test_budget_30_with_three_entities_goes_to_shared_cluster() -> None:
    decision = recommend(TenantProfile(budget=30.0, entity_count=3, compliance_flags=()))
    assert decision.backend_kind == BackendKind.SHARED_CLUSTER
    assert decision.confidence > 0.8


@pytest.mark.parametrize(
    ("budget", "entity_count"),
    [(30.0, 3), (5.0, 0), (5_000.0, 5_000)],
)
def test_regulated_tenant_goes_to_dedicated_for_any_budget_or_size(budget: float, entity_count: int) -> None:
    decision = recommend(TenantProfile(budget=budget, entity_count=entity_count, compliance_flags=("regulated",)))
    assert decision.backend_kind == BackendKind.DEDICATED_INSTANCE
    assert decision.confidence > 0.8


def test_compliance_forces_dedicated_even_on_a_tiny_budget() -> None:
    decision = recommend(TenantProfile(budget=5.0, entity_count=2, compliance_flags=("hipaa",)))
    assert decision.backend_kind == BackendKind.DEDICATED_INSTANCE
    assert decision.tier == "standard"
    # Cost factors never fire against a compliance requirement.
    assert "low budget" not in decision.reason
    assert "hipaa" in decision.reason


def test_large_fleet_goes_to_dedicated_with_matching_tier() -> None:
    decision = recommend(TenantProfile(budget=1000.0, entity_count=600, peak_concurrency=600))
    assert decision.backend_kind == BackendKind.DEDICATED_INSTANCE
    assert decision.tier == "performance"
    assert decision.scores["dedicated_instance"] > decision.scores["shared_cluster"]


def test_neutral_profile_ties_resolve_to_shared_cluster() -> None:
    decision = recommend(TenantProfile(budget=100.0, entity_count=50, peak_concurrency=100))
    assert decision.scores["shared_cluster"] == decision.scores["dedicated_instance"]
    assert decision.backend_kind == BackendKind.SHARED_CLUSTER
    assert decision.reason == "no placement factor fired; neutral scores"


def test_scores_stay_within_unit_interval() -> None:
    profile = TenantProfile(
        budget=10_000.0,
        entity_count=10_000,
        latency_requirement_ms=5,
        geo_spread=10,
        peak_concurrency=10_000,
    )
    decision = recommend(profile)
    assert all(0.0 <= score <= 1.0 for score in decision.scores.values())


def test_tier_boundaries_follow_entity_count() -> None:
    assert tier_for(BackendKind.SHARED_CLUSTER, 5) == "free"
    assert tier_for(BackendKind.SHARED_CLUSTER, 6) == "pro"
    assert tier_for(BackendKind.SHARED_CLUSTER, 101) == "business"
    assert tier_for(BackendKind.DEDICATED_INSTANCE, 250) == "standard"
    assert tier_for(BackendKind.DEDICATED_INSTANCE, 1000) == "performance"
    assert tier_for(BackendKind.DEDICATED_INSTANCE, 1001) == "enterprise"


def test_migration_threshold_keeps_borderline_tenants_in_place() -> None:
    # High budget alone nudges toward dedicated but only to 0.7, which does not exceed the bar.
    profile = TenantProfile(budget=600.0, entity_count=50, peak_concurrency=100)
    evaluation = evaluate_migration(profile, BackendKind.SHARED_CLUSTER)
    assert evaluation.decision.backend_kind == BackendKind.DEDICATED_INSTANCE
    assert evaluation.should_migrate is False
    assert evaluation.kind is None


def test_upgrade_recommended_when_usage_outgrows_shared() -> None:
    profile = TenantProfile(budget=20.0, entity_count=5, peak_concurrency=10)
    evaluation = evaluate_migration(
        profile,
        BackendKind.SHARED_CLUSTER,
        snapshot_metrics={"entity_count": 800, "peak_concurrency": 900},
        policy=PlacementPolicy(),
    )
    assert evaluation.should_migrate is True
    assert evaluation.kind == JobKind.UPGRADE
    assert evaluation.decision.backend_kind == BackendKind.DEDICATED_INSTANCE


def test_already_on_recommended_backend_never_migrates() -> None:
    profile = TenantProfile(budget=20.0, entity_count=5, peak_concurrency=10)
    evaluation = evaluate_migration(profile, BackendKind.SHARED_CLUSTER)
    assert evaluation.should_migrate is False
    assert evaluation.reason == "already on recommended backend"


def test_snapshot_overrides_usage_but_not_requirements() -> None:
    profile = TenantProfile(budget=20.0, entity_count=5, compliance_flags=("gdpr",), latency_requirement_ms=40)
    metrics = {"entity_count": 70, "geo_regions": ["eu", "us", "ap", "eu", "sa"], "compliance_flags": []}
    merged = merge_snapshot(profile, metrics)
    assert merged.entity_count == 70
    assert merged.geo_spread == 4
    assert merged.compliance_flags == ("gdpr",)
    assert merged.latency_requirement_ms == 40
    assert merge_snapshot(profile, None) is profile


def test_unmeasured_metrics_leave_profile_untouched() -> None:
    profile = TenantProfile(budget=200.0, entity_count=0, geo_spread=3, peak_concurrency=800)
    merged = merge_snapshot(profile, {"entity_count": 0, "daily_write_volume": 12})
    assert merged == profile
    assert recommend(merged) == recommend(profile)
