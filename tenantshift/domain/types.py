from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BackendKind(str, Enum):
    SHARED_CLUSTER = "shared_cluster"
    DEDICATED_INSTANCE = "dedicated_instance"


class DeploymentStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    DRAINING = "draining"
    DECOMMISSIONED = "decommissioned"


class JobKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    EMERGENCY = "emergency"


class JobState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    PROVISIONING_TARGET = "provisioning_target"
    EXPORTING = "exporting"
    IMPORTING = "importing"
    VERIFYING = "verifying"
    CUTTING_OVER = "cutting_over"
    VERIFYING_CUTOVER = "verifying_cutover"
    CLEANING_UP = "cleaning_up"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.ROLLED_BACK, JobState.FAILED})

# Happy-path ordering; failure exits are handled separately.
FORWARD_STATES: tuple[JobState, ...] = (
    JobState.PENDING,
    JobState.VALIDATING,
    JobState.PROVISIONING_TARGET,
    JobState.EXPORTING,
    JobState.IMPORTING,
    JobState.VERIFYING,
    JobState.CUTTING_OVER,
    JobState.VERIFYING_CUTOVER,
    JobState.CLEANING_UP,
    JobState.COMPLETED,
)

# Once routing starts moving the job must finish or roll back under control.
CUTOVER_STARTED_STATES = frozenset(
    {JobState.CUTTING_OVER, JobState.VERIFYING_CUTOVER, JobState.CLEANING_UP}
)


def is_terminal(state: str | JobState) -> bool:
    return JobState(state) in TERMINAL_STATES


@dataclass(frozen=True)
class TenantProfile:
    # Decision inputs only; identifiers stay outside so recommend() remains pure.
    budget: float
    entity_count: int
    compliance_flags: tuple[str, ...] = ()
    latency_requirement_ms: int | None = None
    geo_spread: int = 0
    peak_concurrency: int = 0


@dataclass(frozen=True)
class Decision:
    backend_kind: BackendKind
    tier: str
    reason: str
    confidence: float
    scores: dict[str, float] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class DeploymentHandle:
    # Opaque to the orchestrator; only the owning adapter interprets resources.
    deployment_id: str
    backend_kind: BackendKind
    endpoint: str
    resources: dict[str, Any]


@dataclass(frozen=True)
class ConnectionInfo:
    dsn: str
    options: dict[str, Any] = field(default_factory=dict)
