from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ValidationError
from tenantshift.domain.types import BackendKind, Decision, JobKind, TenantProfile
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.persistence.repos import tenants as tenants_repo
from tenantshift.services.usage import latest_snapshot


logger = logging.getLogger(__name__)

BASE_SCORE = 0.5
MAX_ADJUSTMENT = 0.5

# Fixed candidate order doubles as the tie-breaker: the cheaper backend wins ties.
_CANDIDATES: tuple[BackendKind, ...] = (BackendKind.SHARED_CLUSTER, BackendKind.DEDICATED_INSTANCE)


@dataclass(frozen=True)
class PlacementPolicy:
    # Illustrative magnitudes; operators tune these through settings.
    initial_threshold: float = 0.8
    migration_threshold: float = 0.7
    low_budget: float = 50.0
    high_budget: float = 500.0
    small_entity_count: int = 10
    large_entity_count: int = 500
    strict_latency_ms: int = 50
    wide_geo_regions: int = 3
    high_peak_concurrency: int = 500
    low_peak_concurrency: int = 20
    low_budget_weight: float = 0.3
    high_budget_weight: float = 0.2
    small_entities_weight: float = 0.2
    large_entities_weight: float = 0.3
    compliance_weight: float = 0.5
    strict_latency_weight: float = 0.4
    wide_geo_weight: float = 0.1
    high_concurrency_weight: float = 0.2
    low_concurrency_weight: float = 0.1
    # Entity-count tier boundaries (inclusive upper bounds).
    shared_tiers: tuple[tuple[int, str], ...] = ((5, "free"), (100, "pro"))
    shared_top_tier: str = "business"
    dedicated_tiers: tuple[tuple[int, str], ...] = ((250, "standard"), (1000, "performance"))
    dedicated_top_tier: str = "enterprise"


def policy_from_settings() -> PlacementPolicy:
    settings = get_settings()
    return replace(
        PlacementPolicy(),
        initial_threshold=settings.placement_initial_threshold,
        migration_threshold=settings.placement_migration_threshold,
        low_budget=settings.placement_low_budget,
        high_budget=settings.placement_high_budget,
        small_entity_count=settings.placement_small_entity_count,
        large_entity_count=settings.placement_large_entity_count,
        strict_latency_ms=settings.placement_strict_latency_ms,
        wide_geo_regions=settings.placement_wide_geo_regions,
        high_peak_concurrency=settings.placement_high_peak_concurrency,
        low_peak_concurrency=settings.placement_low_peak_concurrency,
        low_budget_weight=settings.placement_low_budget_weight,
        high_budget_weight=settings.placement_high_budget_weight,
        small_entities_weight=settings.placement_small_entities_weight,
        large_entities_weight=settings.placement_large_entities_weight,
        compliance_weight=settings.placement_compliance_weight,
        strict_latency_weight=settings.placement_strict_latency_weight,
        wide_geo_weight=settings.placement_wide_geo_weight,
        high_concurrency_weight=settings.placement_high_concurrency_weight,
        low_concurrency_weight=settings.placement_low_concurrency_weight,
    )


@dataclass(frozen=True)
class FactorAdjustment:
    factor: str
    shared: float
    dedicated: float
    reason: str


@dataclass(frozen=True)
class PlacementEvaluation:
    decision: Decision
    current_backend: BackendKind
    should_migrate: bool
    kind: JobKind | None
    reason: str


def _bounded(value: float) -> float:
    return max(-MAX_ADJUSTMENT, min(MAX_ADJUSTMENT, value))


def _clamp(score: float) -> float:
    # Round after clamping so float drift never flips a threshold comparison.
    return round(max(0.0, min(1.0, score)), 4)


def _factor_adjustments(profile: TenantProfile, policy: PlacementPolicy) -> list[FactorAdjustment]:
    # Evaluation order matters: compliance is checked before any cost-based default.
    adjustments: list[FactorAdjustment] = []
    compliance = bool(profile.compliance_flags)
    if compliance:
        flags = ", ".join(profile.compliance_flags)
        adjustments.append(
            FactorAdjustment(
                "compliance",
                -policy.compliance_weight,
                policy.compliance_weight,
                f"compliance requirements ({flags}) require dedicated isolation",
            )
        )

    if profile.latency_requirement_ms is not None and profile.latency_requirement_ms <= policy.strict_latency_ms:
        adjustments.append(
            FactorAdjustment(
                "latency",
                -policy.strict_latency_weight / 2,
                policy.strict_latency_weight,
                f"strict latency requirement ({profile.latency_requirement_ms}ms)",
            )
        )

    # Cost factors are defaults only; they never apply against a compliance requirement.
    if not compliance:
        if profile.budget < policy.low_budget:
            adjustments.append(
                FactorAdjustment(
                    "budget",
                    policy.low_budget_weight,
                    -policy.low_budget_weight * 2 / 3,
                    f"low budget ({profile.budget:g})",
                )
            )
        elif profile.budget >= policy.high_budget:
            adjustments.append(
                FactorAdjustment(
                    "budget",
                    -policy.high_budget_weight / 2,
                    policy.high_budget_weight,
                    f"high budget ({profile.budget:g})",
                )
            )

        if profile.entity_count <= policy.small_entity_count:
            adjustments.append(
                FactorAdjustment(
                    "entity_count",
                    policy.small_entities_weight,
                    -policy.small_entities_weight / 2,
                    f"small fleet ({profile.entity_count} entities)",
                )
            )
        elif profile.entity_count >= policy.large_entity_count:
            adjustments.append(
                FactorAdjustment(
                    "entity_count",
                    -policy.large_entities_weight * 2 / 3,
                    policy.large_entities_weight,
                    f"large fleet ({profile.entity_count} entities)",
                )
            )

    if profile.geo_spread >= policy.wide_geo_regions:
        adjustments.append(
            FactorAdjustment(
                "geo_spread",
                0.0,
                policy.wide_geo_weight,
                f"wide geographic spread ({profile.geo_spread} regions)",
            )
        )

    if profile.peak_concurrency >= policy.high_peak_concurrency:
        adjustments.append(
            FactorAdjustment(
                "peak_concurrency",
                -policy.high_concurrency_weight / 2,
                policy.high_concurrency_weight,
                f"high peak concurrency ({profile.peak_concurrency})",
            )
        )
    elif profile.peak_concurrency <= policy.low_peak_concurrency:
        adjustments.append(
            FactorAdjustment(
                "peak_concurrency",
                policy.low_concurrency_weight,
                0.0,
                f"low peak concurrency ({profile.peak_concurrency})",
            )
        )
    return adjustments


def tier_for(backend_kind: BackendKind, entity_count: int, policy: PlacementPolicy | None = None) -> str:
    # Tier is a deterministic function of entity count within each backend.
    policy = policy or PlacementPolicy()
    if backend_kind == BackendKind.SHARED_CLUSTER:
        bounds, top = policy.shared_tiers, policy.shared_top_tier
    else:
        bounds, top = policy.dedicated_tiers, policy.dedicated_top_tier
    for upper, tier in bounds:
        if entity_count <= upper:
            return tier
    return top


def recommend(profile: TenantProfile, policy: PlacementPolicy | None = None) -> Decision:
    # Pure scoring: identical profile and policy always yield an identical decision.
    policy = policy or PlacementPolicy()
    raw = {kind: BASE_SCORE for kind in _CANDIDATES}
    fired: list[str] = []
    for adjustment in _factor_adjustments(profile, policy):
        raw[BackendKind.SHARED_CLUSTER] += _bounded(adjustment.shared)
        raw[BackendKind.DEDICATED_INSTANCE] += _bounded(adjustment.dedicated)
        fired.append(adjustment.reason)
    scores = {kind: _clamp(value) for kind, value in raw.items()}

    if profile.compliance_flags:
        winner = BackendKind.DEDICATED_INSTANCE
    else:
        above = [kind for kind in _CANDIDATES if scores[kind] > policy.initial_threshold]
        pool = above or list(_CANDIDATES)
        winner = max(pool, key=lambda kind: scores[kind])

    return Decision(
        backend_kind=winner,
        tier=tier_for(winner, profile.entity_count, policy),
        reason="; ".join(fired) if fired else "no placement factor fired; neutral scores",
        confidence=scores[winner],
        scores={kind.value: score for kind, score in scores.items()},
    )


def migration_kind(current: BackendKind, target: BackendKind) -> JobKind:
    return JobKind.UPGRADE if target == BackendKind.DEDICATED_INSTANCE else JobKind.DOWNGRADE


def merge_snapshot(profile: TenantProfile, metrics: Mapping[str, Any] | None) -> TenantProfile:
    # Observed usage overrides stored profile fields; unmeasured metrics leave them alone.
    if not metrics:
        return profile
    updates: dict[str, Any] = {}
    if metrics.get("entity_count") is not None:
        updates["entity_count"] = int(metrics["entity_count"])
    if metrics.get("peak_concurrency") is not None:
        updates["peak_concurrency"] = int(metrics["peak_concurrency"])
    regions = metrics.get("geo_regions")
    if isinstance(regions, (list, tuple)):
        updates["geo_spread"] = len({str(region) for region in regions})
    return replace(profile, **updates)


def evaluate_migration(
    profile: TenantProfile,
    current_backend: BackendKind,
    *,
    snapshot_metrics: Mapping[str, Any] | None = None,
    policy: PlacementPolicy | None = None,
) -> PlacementEvaluation:
    # Lower bar than initial placement but still sticky: borderline scores keep tenants where they are.
    policy = policy or PlacementPolicy()
    decision = recommend(merge_snapshot(profile, snapshot_metrics), policy)
    if decision.backend_kind == current_backend:
        return PlacementEvaluation(decision, current_backend, False, None, "already on recommended backend")
    if decision.confidence <= policy.migration_threshold:
        return PlacementEvaluation(
            decision,
            current_backend,
            False,
            None,
            f"confidence {decision.confidence:.2f} does not exceed {policy.migration_threshold:.2f}",
        )
    return PlacementEvaluation(
        decision,
        current_backend,
        True,
        migration_kind(current_backend, decision.backend_kind),
        decision.reason,
    )


async def evaluate_tenant(session: AsyncSession, tenant_id: str) -> PlacementEvaluation:
    # Side-effect free: reads tenant, active deployment and newest usage snapshot only.
    tenant = await tenants_repo.require_tenant(session, tenant_id)
    deployment = await deployments_repo.get_deployment(session, tenant.current_deployment_id)
    if deployment is None:
        raise ValidationError(f"Tenant {tenant_id} has no active deployment")
    snapshot = await latest_snapshot(session, tenant_id)
    evaluation = evaluate_migration(
        tenants_repo.profile_from_tenant(tenant),
        BackendKind(deployment.backend_kind),
        snapshot_metrics=snapshot.metrics_json if snapshot is not None else None,
        policy=policy_from_settings(),
    )
    logger.info(
        "placement_evaluated tenant_id=%s current=%s recommended=%s confidence=%.4f migrate=%s",
        tenant_id,
        evaluation.current_backend.value,
        evaluation.decision.backend_kind.value,
        evaluation.decision.confidence,
        evaluation.should_migrate,
    )
    return evaluation
