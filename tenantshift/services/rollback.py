from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.errors import ProviderError, RollbackFailure
from tenantshift.domain.models import Deployment, MigrationJob
from tenantshift.domain.types import CUTOVER_STARTED_STATES, BackendKind, DeploymentStatus
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.providers.backends.factory import get_backend
from tenantshift.services.cutover import CutoverManager
from tenantshift.services.resilience import Sleeper, retry_async, rollback_retry_policy
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def cutover_began(job: MigrationJob) -> bool:
    states = {entry.get("state") for entry in job.state_history or []}
    return any(state.value in states for state in CUTOVER_STARTED_STATES)


def _rollback_retryable(exc: Exception) -> bool:
    return isinstance(exc, (ProviderError, TimeoutError, OSError))


@dataclass
class RollbackOutcome:
    routing_restored: bool = False
    target_purged: bool = False
    resources_removed: list[str] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "routing_restored": self.routing_restored,
            "target_purged": self.target_purged,
            "resources_removed": list(self.resources_removed),
            "attempts": self.attempts,
        }


class RollbackManager:
    """Undo a partially completed migration so the source is the only live deployment.

    Order: routing back to the source (only when cutover had begun), then
    target data, then target resources in reverse creation order. Every step
    is idempotent, so the whole sequence is retried as a unit.
    """

    def __init__(
        self,
        *,
        cutover: CutoverManager,
        sleep: Sleeper | None = None,
        backend_resolver: Callable[[BackendKind | str], BackendAdapter] = get_backend,
    ) -> None:
        self._cutover = cutover
        self._sleep = sleep
        self._backend_resolver = backend_resolver

    async def execute(self, session: AsyncSession, job: MigrationJob) -> RollbackOutcome:
        source = await deployments_repo.get_deployment(session, job.source_deployment_id)
        target = await deployments_repo.get_deployment(session, job.target_deployment_id)
        outcome = RollbackOutcome()

        async def _attempt() -> None:
            outcome.attempts += 1
            if source is not None and source.endpoint and cutover_began(job):
                outcome.routing_restored = await self._cutover.restore_routing(
                    source.routing_domain, source.endpoint
                ) or outcome.routing_restored
            if target is not None:
                await self._reclaim_target(target, job, outcome)
            else:
                # Capacity may have been reserved before any target row existed.
                await self._backend_resolver(job.target_backend).release_capacity(reservation_id=job.id)

        try:
            await retry_async(
                _attempt,
                policy=rollback_retry_policy(),
                retryable=_rollback_retryable,
                sleep=self._sleep,
            )
        except Exception as exc:  # noqa: BLE001 - every rollback failure surfaces as RollbackFailure
            increment_counter("rollback_failures_total")
            raise RollbackFailure(
                f"Rollback could not complete after {outcome.attempts} attempts: {exc}"
            ) from exc

        if target is not None:
            now = datetime.now(timezone.utc)
            target.status = DeploymentStatus.DECOMMISSIONED.value
            target.resource_handles = {}
            target.decommissioned_at = now
        increment_counter("rollbacks_total")
        logger.info(
            "migration_rollback_succeeded job_id=%s routing_restored=%s resources_removed=%s",
            job.id,
            outcome.routing_restored,
            len(outcome.resources_removed),
        )
        return outcome

    async def _reclaim_target(self, target: Deployment, job: MigrationJob, outcome: RollbackOutcome) -> None:
        backend = self._backend_resolver(target.backend_kind)
        handle = deployments_repo.to_handle(target)
        # Partially imported data goes before the resources holding it.
        await backend.purge_tenant_data(handle)
        outcome.target_purged = True
        remaining = await backend.list_resources(handle)
        if remaining or target.resource_handles:
            await backend.deprovision(handle)
            outcome.resources_removed = sorted(set(outcome.resources_removed) | set(remaining))
        await backend.release_capacity(reservation_id=job.id)
        leftovers = await backend.list_resources(handle)
        if leftovers:
            raise ProviderError(f"Target deployment {target.id} still holds {len(leftovers)} resources")