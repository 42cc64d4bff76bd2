from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tenantshift.core.config import get_settings
from tenantshift.core.errors import (
    CancellationNotAllowedError,
    CutoverError,
    ExportError,
    ImportBatchError,
    MigrationCancelledError,
    MigrationExclusivityError,
    ProviderError,
    ProvisioningError,
    RollbackFailure,
    TenantShiftError,
    TransferIntegrityError,
    ValidationError,
)
from tenantshift.domain.models import Deployment, ExportPackageRecord, MigrationJob
from tenantshift.domain.types import (
    CUTOVER_STARTED_STATES,
    TERMINAL_STATES,
    BackendKind,
    DeploymentStatus,
    HealthStatus,
    JobKind,
    JobState,
    is_terminal,
)
from tenantshift.persistence.db import SessionLocal
from tenantshift.persistence.repos import deployments as deployments_repo
from tenantshift.persistence.repos import jobs as jobs_repo
from tenantshift.persistence.repos import tenants as tenants_repo
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.providers.backends.factory import get_backend
from tenantshift.providers.dns.base import DnsProvider
from tenantshift.services.audit import record_event
from tenantshift.services.cutover import CutoverManager
from tenantshift.services.locks import create_job_with_lock, holds_lock, release_lock
from tenantshift.services.notifications import notify
from tenantshift.services.placement import migration_kind, policy_from_settings, recommend, tier_for
from tenantshift.services.resilience import (
    Sleeper,
    TransientException,
    provisioning_retry_policy,
    retry_async,
)
from tenantshift.services.rollback import RollbackManager
from tenantshift.services.telemetry import increment_counter, record_transition
from tenantshift.services.transfer.exporter import export_tenant_data, rebase_package
from tenantshift.services.transfer.importer import import_package
from tenantshift.services.transfer.package import (
    ExportPackage,
    build_package,
    get_package_storage,
    latest_live_package,
    persist_package_record,
)
from tenantshift.services.transfer.retention import retention_days_for
from tenantshift.services.verifier import verify_transfer


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.VALIDATING, JobState.ROLLING_BACK}),
    JobState.VALIDATING: frozenset({JobState.PROVISIONING_TARGET, JobState.ROLLING_BACK}),
    JobState.PROVISIONING_TARGET: frozenset({JobState.EXPORTING, JobState.ROLLING_BACK}),
    JobState.EXPORTING: frozenset({JobState.IMPORTING, JobState.ROLLING_BACK}),
    JobState.IMPORTING: frozenset({JobState.VERIFYING, JobState.ROLLING_BACK}),
    JobState.VERIFYING: frozenset({JobState.CUTTING_OVER, JobState.ROLLING_BACK}),
    JobState.CUTTING_OVER: frozenset({JobState.VERIFYING_CUTOVER, JobState.ROLLING_BACK}),
    JobState.VERIFYING_CUTOVER: frozenset({JobState.CLEANING_UP, JobState.ROLLING_BACK}),
    JobState.CLEANING_UP: frozenset({JobState.COMPLETED, JobState.ROLLING_BACK}),
    JobState.ROLLING_BACK: frozenset({JobState.ROLLED_BACK, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.ROLLED_BACK: frozenset(),
    JobState.FAILED: frozenset(),
}

# Raw provider failures become the taxonomy error owned by the step they happened in.
_STEP_ERRORS: dict[JobState, type[TenantShiftError]] = {
    JobState.PENDING: ValidationError,
    JobState.VALIDATING: ProvisioningError,
    JobState.PROVISIONING_TARGET: ProvisioningError,
    JobState.EXPORTING: ExportError,
    JobState.IMPORTING: ImportBatchError,
    JobState.VERIFYING: TransferIntegrityError,
    JobState.CUTTING_OVER: CutoverError,
    JobState.VERIFYING_CUTOVER: CutoverError,
    JobState.CLEANING_UP: CutoverError,
}

_SECRET_PATTERN = re.compile(r"(?i)(token|secret|password|api[_-]?key|authorization)([=:]\s*)\S+")
_DSN_CREDENTIALS = re.compile(r"(?i)([a-z][a-z0-9+.-]*://)[^/\s:@]+:[^/\s@]+@")
MAX_ERROR_LENGTH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_error_message(message: str) -> str:
    # Job rows are operator-visible; credentials never land there.
    cleaned = _SECRET_PATTERN.sub(r"\1\2[REDACTED]", message)
    cleaned = _DSN_CREDENTIALS.sub(r"\1[REDACTED]@", cleaned)
    if len(cleaned) > MAX_ERROR_LENGTH:
        cleaned = cleaned[: MAX_ERROR_LENGTH - 3] + "..."
    return cleaned


def translate_error(exc: Exception, state: JobState) -> TenantShiftError:
    if isinstance(exc, TenantShiftError) and not isinstance(exc, ProviderError):
        return exc
    error_cls = _STEP_ERRORS.get(state, TenantShiftError)
    if isinstance(exc, (ProviderError, *TransientException)):
        return error_cls(f"{state.value} failed: {exc}")
    return error_cls(f"{state.value} failed unexpectedly: {type(exc).__name__}")


def job_summary(job: MigrationJob) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "tenant_id": job.tenant_id,
        "kind": job.kind,
        "state": job.state,
        "source_deployment_id": job.source_deployment_id,
        "target_deployment_id": job.target_deployment_id,
        "target_backend": job.target_backend,
        "target_tier": job.target_tier,
        "forced": job.forced,
        "error_code": job.error_code,
    }


def _history_entry(state: JobState, at: datetime, error: TenantShiftError | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"state": state.value, "at": at.isoformat()}
    if error is not None:
        entry["error_code"] = error.code
    return entry


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def trigger_migration(
    session: AsyncSession,
    *,
    tenant_id: str,
    target_backend: BackendKind,
    kind: JobKind,
    target_tier: str | None = None,
    forced: bool = False,
    reason: str | None = None,
    requested_by: str | None = None,
    request_id: str | None = None,
) -> MigrationJob:
    """Create a pending job for ``tenant_id`` or reject it with no state change.

    Exclusivity is decided by the lock row written in the same transaction as
    the job, so concurrent triggers yield exactly one accepted job.
    """
    tenant = await tenants_repo.require_tenant(session, tenant_id)
    source = await deployments_repo.get_deployment(session, tenant.current_deployment_id)
    if source is None or source.status != DeploymentStatus.ACTIVE.value:
        raise ValidationError(f"Tenant {tenant_id} has no active deployment to migrate from")
    if BackendKind(source.backend_kind) == target_backend:
        raise ValidationError(f"Tenant {tenant_id} already runs on {target_backend.value}")
    if await jobs_repo.get_active_job_for_tenant(session, tenant_id) is not None:
        increment_counter("migrations_rejected_total.exclusivity")
        raise MigrationExclusivityError(f"A migration is already in progress for tenant {tenant_id}")

    now = _utc_now()
    job = MigrationJob(
        id=f"mig_{uuid4().hex}",
        tenant_id=tenant_id,
        kind=kind.value,
        state=JobState.PENDING.value,
        source_deployment_id=source.id,
        target_backend=target_backend.value,
        target_tier=target_tier or tier_for(target_backend, tenant.entity_count, policy_from_settings()),
        forced=forced,
        reason=reason,
        requested_by=requested_by,
        cancel_requested=False,
        import_cursor={},
        state_history=[_history_entry(JobState.PENDING, now)],
        metadata_json={"request_id": request_id} if request_id else {},
        created_at=now,
        updated_at=now,
    )
    try:
        await create_job_with_lock(session, job=job, owner=requested_by)
    except MigrationExclusivityError:
        increment_counter("migrations_rejected_total.exclusivity")
        raise
    increment_counter(f"migrations_triggered_total.{kind.value}")
    logger.info(
        "migration_triggered job_id=%s tenant_id=%s kind=%s target=%s forced=%s",
        job.id,
        tenant_id,
        kind.value,
        target_backend.value,
        forced,
    )
    await record_event(
        session=session,
        tenant_id=tenant_id,
        event_type="migration.requested",
        outcome="success",
        actor_type="admin" if requested_by else "system",
        actor_id=requested_by,
        resource_type="migration_job",
        resource_id=job.id,
        request_id=request_id,
        metadata=job_summary(job),
        commit=True,
    )
    await notify(tenant_id, "migration.started", job_summary(job))
    return job


async def force_migration(
    session: AsyncSession,
    *,
    tenant_id: str,
    target_backend: BackendKind | None = None,
    kind: JobKind | None = None,
    requested_by: str | None = None,
    reason: str | None = None,
    request_id: str | None = None,
) -> MigrationJob:
    # Operator override: skips the confidence threshold, never the exclusivity rule.
    tenant = await tenants_repo.require_tenant(session, tenant_id)
    source = await deployments_repo.get_deployment(session, tenant.current_deployment_id)
    if source is None:
        raise ValidationError(f"Tenant {tenant_id} has no active deployment")
    current = BackendKind(source.backend_kind)
    if kind == JobKind.EMERGENCY:
        # The source is failing; the only place to go is the other backend.
        target = target_backend or _other_backend(current)
    elif target_backend is not None:
        target = target_backend
    else:
        decision = recommend(tenants_repo.profile_from_tenant(tenant), policy_from_settings())
        target = decision.backend_kind
        reason = reason or decision.reason
    return await trigger_migration(
        session,
        tenant_id=tenant_id,
        target_backend=target,
        kind=kind or migration_kind(current, target),
        forced=True,
        reason=reason,
        requested_by=requested_by,
        request_id=request_id,
    )


def _other_backend(kind: BackendKind) -> BackendKind:
    if kind == BackendKind.SHARED_CLUSTER:
        return BackendKind.DEDICATED_INSTANCE
    return BackendKind.SHARED_CLUSTER


async def request_cancellation(
    session: AsyncSession,
    *,
    job_id: str,
    requested_by: str | None = None,
    request_id: str | None = None,
) -> MigrationJob:
    job = await jobs_repo.require_job(session, job_id)
    state = JobState(job.state)
    if is_terminal(state):
        raise CancellationNotAllowedError(f"Job {job_id} already finished as {state.value}")
    if state in CUTOVER_STARTED_STATES or state == JobState.ROLLING_BACK:
        raise CancellationNotAllowedError(
            f"Job {job_id} is in {state.value}; it must finish or roll back under control"
        )
    # Plain UPDATE leaves the row version alone so the running step is not invalidated.
    await session.execute(
        update(MigrationJob)
        .where(MigrationJob.id == job_id)
        .values(cancel_requested=True)
        .execution_options(synchronize_session=False)
    )
    await record_event(
        session=session,
        tenant_id=job.tenant_id,
        event_type="migration.cancel_requested",
        outcome="success",
        actor_type="admin" if requested_by else "system",
        actor_id=requested_by,
        resource_type="migration_job",
        resource_id=job.id,
        request_id=request_id,
        metadata={"state": state.value},
    )
    await session.commit()
    await session.refresh(job)
    logger.info("migration_cancel_requested job_id=%s state=%s", job_id, state.value)
    return job


StepHandler = Callable[[AsyncSession, MigrationJob], Awaitable[JobState]]


class MigrationRunner:
    """Drive one migration job through its states until it is terminal.

    Each state runs in its own session and ends with a committed transition,
    so any runner can pick a job up from its last recorded state.
    """

    def __init__(
        self,
        *,
        sleep: Sleeper | None = None,
        dns_provider: DnsProvider | None = None,
        backend_resolver: Callable[[BackendKind | str], BackendAdapter] = get_backend,
    ) -> None:
        self._settings = get_settings()
        self._sleep = sleep
        self._backend_resolver = backend_resolver
        self._cutover = CutoverManager(dns_provider, sleep=sleep)
        self._rollback = RollbackManager(cutover=self._cutover, sleep=sleep, backend_resolver=backend_resolver)
        self._handlers: dict[JobState, StepHandler] = {
            JobState.PENDING: self._start,
            JobState.VALIDATING: self._validate,
            JobState.PROVISIONING_TARGET: self._provision_target,
            JobState.EXPORTING: self._export,
            JobState.IMPORTING: self._import,
            JobState.VERIFYING: self._verify,
            JobState.CUTTING_OVER: self._cut_over,
            JobState.VERIFYING_CUTOVER: self._verify_cutover,
            JobState.CLEANING_UP: self._clean_up,
        }

    async def run(self, job_id: str) -> MigrationJob:
        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            return await self._drive(job_id)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, job_id: str) -> None:
        # Long steps (TTL waits, provider backoff) keep the row fresh; the stale sweep only sees dead runners.
        interval = min(self._settings.migration_heartbeat_interval_s, self._settings.migration_stale_after_s / 3)
        while True:
            await asyncio.sleep(max(interval, 0.01))
            try:
                async with SessionLocal() as session:
                    await session.execute(
                        update(MigrationJob)
                        .where(
                            MigrationJob.id == job_id,
                            MigrationJob.state.not_in([state.value for state in TERMINAL_STATES]),
                        )
                        .values(updated_at=_utc_now())
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.warning("migration_heartbeat_failed job_id=%s error=%s", job_id, type(exc).__name__)

    async def _drive(self, job_id: str) -> MigrationJob:
        while True:
            async with SessionLocal() as session:
                job = await jobs_repo.require_job(session, job_id)
                state = JobState(job.state)
                if is_terminal(state):
                    return job
                if state == JobState.ROLLING_BACK:
                    await self._roll_back(session, job)
                    continue
                if job.cancel_requested and state not in CUTOVER_STARTED_STATES:
                    await self._abort(session, job, MigrationCancelledError("Cancelled by operator"))
                    continue
                try:
                    next_state = await self._handlers[state](session, job)
                    if next_state == JobState.CUTTING_OVER and await self._cancel_flag(session, job.id):
                        # Last point a cancellation can still be honoured.
                        raise MigrationCancelledError("Cancelled by operator")
                    await self._transition(session, job, next_state)
                except StaleDataError:
                    # Another writer moved the row; re-read and re-enter the recorded state.
                    await session.rollback()
                    increment_counter("migration_stale_writes_total")
                    logger.warning("migration_job_concurrently_modified job_id=%s state=%s", job_id, state.value)
                    continue
                except Exception as exc:  # noqa: BLE001 - every step failure is translated and rolled back
                    await session.rollback()
                    await session.refresh(job)
                    error = translate_error(exc, state)
                    logger.warning(
                        "migration_step_failed job_id=%s state=%s code=%s error=%s",
                        job.id,
                        state.value,
                        error.code,
                        sanitize_error_message(str(error)),
                    )
                    await self._abort(session, job, error)
                    continue
                if next_state == JobState.COMPLETED:
                    await self._finish(session, job)

    async def _cancel_flag(self, session: AsyncSession, job_id: str) -> bool:
        # Column read so pending step changes on the loaded job are kept.
        result = await session.execute(select(MigrationJob.cancel_requested).where(MigrationJob.id == job_id))
        return bool(result.scalar_one())

    async def _transition(
        self,
        session: AsyncSession,
        job: MigrationJob,
        to_state: JobState,
        *,
        error: TenantShiftError | None = None,
    ) -> None:
        from_state = JobState(job.state)
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise TenantShiftError(f"Illegal transition {from_state.value} -> {to_state.value}")
        now = _utc_now()
        history = list(job.state_history or [])
        duration_ms = 0.0
        if history:
            started = _as_utc(datetime.fromisoformat(history[-1]["at"]))
            duration_ms = max((now - started).total_seconds() * 1000.0, 0.0)
        history.append(_history_entry(to_state, now, error))
        job.state = to_state.value
        job.state_history = history
        job.updated_at = now
        if error is not None:
            job.error_code = error.code
            job.error_message = sanitize_error_message(str(error))
        if is_terminal(to_state):
            job.completed_at = now
        await record_event(
            session=session,
            tenant_id=job.tenant_id,
            event_type=f"migration.state.{to_state.value}",
            outcome="failure" if to_state in {JobState.ROLLING_BACK, JobState.FAILED} else "success",
            resource_type="migration_job",
            resource_id=job.id,
            metadata={"from_state": from_state.value, "to_state": to_state.value},
            error_code=error.code if error is not None else None,
        )
        await session.commit()
        record_transition(job_id=job.id, from_state=from_state.value, to_state=to_state.value, duration_ms=duration_ms)
        logger.info(
            "migration_state_transition job_id=%s tenant_id=%s from=%s to=%s duration_ms=%.1f",
            job.id,
            job.tenant_id,
            from_state.value,
            to_state.value,
            duration_ms,
        )

    async def _abort(self, session: AsyncSession, job: MigrationJob, error: TenantShiftError) -> None:
        increment_counter(f"migration_failures_total.{error.code}")
        await self._transition(session, job, JobState.ROLLING_BACK, error=error)

    async def _roll_back(self, session: AsyncSession, job: MigrationJob) -> None:
        try:
            outcome = await self._rollback.execute(session, job)
        except RollbackFailure as exc:
            await session.rollback()
            await session.refresh(job)
            metadata = dict(job.metadata_json or {})
            metadata["rollback"] = {"ok": False, "detail": sanitize_error_message(str(exc))}
            job.metadata_json = metadata
            # Keep the original failure on the job; the rollback failure lives in metadata.
            await self._transition(session, job, JobState.FAILED)
            logger.critical(
                "migration_failed_manual_intervention_required job_id=%s tenant_id=%s error=%s",
                job.id,
                job.tenant_id,
                job.error_code,
            )
            increment_counter("migrations_failed_total")
            await self._release(session, job)
            await notify(job.tenant_id, "migration.failed", {**job_summary(job), "rollback": metadata["rollback"]})
            return
        metadata = dict(job.metadata_json or {})
        metadata["rollback"] = {"ok": True, **outcome.to_dict()}
        job.metadata_json = metadata
        await self._transition(session, job, JobState.ROLLED_BACK)
        increment_counter("migrations_rolled_back_total")
        await self._release(session, job)
        await notify(job.tenant_id, "migration.rolled_back", job_summary(job))

    async def _finish(self, session: AsyncSession, job: MigrationJob) -> None:
        increment_counter(f"migrations_completed_total.{job.kind}")
        await self._release(session, job)
        await notify(job.tenant_id, "migration.completed", job_summary(job))

    async def _release(self, session: AsyncSession, job: MigrationJob) -> None:
        await release_lock(session, tenant_id=job.tenant_id, job_id=job.id)

    def _merge_metadata(self, job: MigrationJob, **values: Any) -> None:
        metadata = dict(job.metadata_json or {})
        metadata.update(values)
        job.metadata_json = metadata

    async def _deployments(self, session: AsyncSession, job: MigrationJob) -> tuple[Deployment, Deployment | None]:
        source = await deployments_repo.get_deployment(session, job.source_deployment_id)
        if source is None:
            raise ValidationError(f"Source deployment {job.source_deployment_id} is missing")
        target = await deployments_repo.get_deployment(session, job.target_deployment_id)
        return source, target

    # step handlers

    async def _start(self, session: AsyncSession, job: MigrationJob) -> JobState:
        if not await holds_lock(session, tenant_id=job.tenant_id, job_id=job.id):
            raise MigrationExclusivityError(f"Job {job.id} no longer holds the tenant migration lock")
        return JobState.VALIDATING

    async def _validate(self, session: AsyncSession, job: MigrationJob) -> JobState:
        source, _ = await self._deployments(session, job)
        if job.kind == JobKind.EMERGENCY.value:
            # Source is already degraded; capacity is claimed during provisioning instead.
            logger.warning("emergency_validation_skipped job_id=%s tenant_id=%s", job.id, job.tenant_id)
            return JobState.PROVISIONING_TARGET
        if source.status != DeploymentStatus.ACTIVE.value:
            raise ValidationError(f"Source deployment {source.id} is {source.status}, not active")
        health = await self._backend_resolver(source.backend_kind).health_check(deployments_repo.to_handle(source))
        if health == HealthStatus.UNREACHABLE:
            raise ValidationError(f"Source deployment {source.id} is unreachable; use an emergency migration")
        reservation = await self._backend_resolver(job.target_backend).ensure_capacity(
            tenant_id=job.tenant_id,
            reservation_id=job.id,
        )
        self._merge_metadata(job, capacity=reservation, source_health=health.value)
        return JobState.PROVISIONING_TARGET

    async def _provision_target(self, session: AsyncSession, job: MigrationJob) -> JobState:
        source, target = await self._deployments(session, job)
        tenant = await tenants_repo.require_tenant(session, job.tenant_id)
        if target is None:
            # Row first, so a crash mid-provision still leaves rollback something to reclaim.
            target = await deployments_repo.create_deployment(
                session,
                deployment_id=f"dep_{uuid4().hex}",
                tenant_id=job.tenant_id,
                backend_kind=BackendKind(job.target_backend),
                tier=job.target_tier,
                routing_domain=source.routing_domain,
            )
            job.target_deployment_id = target.id
            await session.commit()

        backend = self._backend_resolver(job.target_backend)
        reservation = (job.metadata_json or {}).get("capacity") or {"reservation_id": job.id}

        async def _provision():
            return await backend.provision(
                tenant_id=job.tenant_id,
                tier=job.target_tier,
                region_hints=list(tenant.geo_regions or []),
                deployment_id=target.id,
                reservation=reservation,
            )

        try:
            handle = await retry_async(
                _provision,
                policy=provisioning_retry_policy(),
                retryable=lambda exc: isinstance(exc, (ProviderError, *TransientException)),
                sleep=self._sleep,
            )
        except (ProviderError, *TransientException) as exc:
            raise ProvisioningError(
                f"Target provisioning failed after {self._settings.provision_max_attempts} attempts: {exc}"
            ) from exc
        target.endpoint = handle.endpoint
        target.resource_handles = dict(handle.resources)
        health = await backend.health_check(handle)
        if health == HealthStatus.UNREACHABLE:
            raise ProvisioningError(f"Target deployment {target.id} is unreachable after provisioning")
        return JobState.EXPORTING

    async def _export(self, session: AsyncSession, job: MigrationJob) -> JobState:
        if job.export_package_id and await session.get(ExportPackageRecord, job.export_package_id) is not None:
            # Already exported before a restart.
            return JobState.IMPORTING
        source, _ = await self._deployments(session, job)
        retention_days = retention_days_for(job.kind, job.target_tier)
        job.retention_days = retention_days
        backend = self._backend_resolver(source.backend_kind)
        storage = get_package_storage()
        try:
            package, uri = await export_tenant_data(
                backend=backend,
                handle=deployments_repo.to_handle(source),
                tenant_id=job.tenant_id,
                job_id=job.id,
                kind=job.kind,
                retention_days=retention_days,
            )
        except ExportError:
            if job.kind != JobKind.EMERGENCY.value:
                raise
            package = await self._fallback_package(session, job, source)
            uri = storage.write(package)
        await persist_package_record(session, package=package, uri=uri)
        job.export_package_id = package.package_id
        self._merge_metadata(job, export=package.manifest.to_dict())
        return JobState.IMPORTING

    async def _fallback_package(self, session: AsyncSession, job: MigrationJob, source: Deployment) -> ExportPackage:
        # Emergency only: replay the newest retained package, or carry nothing and backfill later.
        increment_counter("emergency_export_fallbacks_total")
        record = await latest_live_package(session, job.tenant_id)
        if record is not None:
            previous = get_package_storage().read(record.uri)
            logger.warning("emergency_export_fallback job_id=%s package_id=%s", job.id, record.id)
            return rebase_package(
                previous,
                job_id=job.id,
                kind=job.kind,
                notes=[f"source unreadable; replayed retained package {record.id}"],
            )
        logger.warning("emergency_export_empty job_id=%s tenant_id=%s", job.id, job.tenant_id)
        return build_package(
            package_id=f"pkg_{uuid4().hex}",
            tenant_id=job.tenant_id,
            job_id=job.id,
            kind=job.kind,
            source_deployment_id=source.id,
            collections={},
            relations={},
            rows=[],
            retention_days=None,
            retention_cutoff=None,
            best_effort=True,
            notes=["source unreadable and no retained package; follow-up sync will backfill"],
        )

    async def _load_package(self, session: AsyncSession, job: MigrationJob) -> ExportPackage:
        record = await session.get(ExportPackageRecord, job.export_package_id)
        if record is None:
            raise ExportError(f"Export package {job.export_package_id} is not recorded")
        return get_package_storage().read(record.uri)

    async def _import(self, session: AsyncSession, job: MigrationJob) -> JobState:
        _, target = await self._deployments(session, job)
        if target is None:
            raise ImportBatchError("Import target deployment is missing")
        package = await self._load_package(session, job)

        async def _checkpoint(cursor: dict[str, Any]) -> None:
            job.import_cursor = cursor
            job.updated_at = _utc_now()
            await session.commit()

        cursor = await import_package(
            backend=self._backend_resolver(target.backend_kind),
            handle=deployments_repo.to_handle(target),
            package=package,
            batch_size=self._settings.import_batch_size,
            cursor=dict(job.import_cursor or {}),
            checkpoint=_checkpoint,
        )
        job.import_cursor = cursor
        return JobState.VERIFYING

    async def _verify(self, session: AsyncSession, job: MigrationJob) -> JobState:
        _, target = await self._deployments(session, job)
        if target is None:
            raise TransferIntegrityError("Verification target deployment is missing")
        package = await self._load_package(session, job)
        report = await verify_transfer(
            backend=self._backend_resolver(target.backend_kind),
            handle=deployments_repo.to_handle(target),
            package=package,
        )
        self._merge_metadata(job, verification=report.to_dict())
        if report.ok:
            return JobState.CUTTING_OVER
        if job.kind == JobKind.EMERGENCY.value:
            # Availability outranks rigor here; the follow-up sync reconciles later.
            increment_counter("emergency_integrity_warnings_total")
            logger.warning(
                "emergency_integrity_mismatch_accepted job_id=%s mismatches=%s",
                job.id,
                "; ".join(report.mismatches),
            )
            return JobState.CUTTING_OVER
        raise TransferIntegrityError("; ".join(report.mismatches))

    async def _cut_over(self, session: AsyncSession, job: MigrationJob) -> JobState:
        source, target = await self._deployments(session, job)
        if target is None or not target.endpoint:
            raise CutoverError("Cutover target has no endpoint")
        active = await deployments_repo.list_active_deployments(session, job.tenant_id)
        if [deployment.id for deployment in active] != [source.id]:
            raise CutoverError(
                f"Tenant {job.tenant_id} must have exactly one active deployment before cutover, found {len(active)}"
            )
        result = await self._cutover.switch(source.routing_domain, target.endpoint)
        self._merge_metadata(
            job,
            cutover={
                "domain": source.routing_domain,
                "source_target": source.endpoint,
                "target": target.endpoint,
                "previous_target": result.previous_target,
                "waited_s": result.waited_s,
            },
        )
        return JobState.VERIFYING_CUTOVER

    async def _verify_cutover(self, session: AsyncSession, job: MigrationJob) -> JobState:
        source, target = await self._deployments(session, job)
        if target is None or not target.endpoint:
            raise CutoverError("Cutover target has no endpoint")
        result = await self._cutover.confirm_propagation(source.routing_domain, target.endpoint)
        self._merge_metadata(job, propagation={"attempts": result.attempts, "observed": result.observed})
        return JobState.CLEANING_UP

    async def _clean_up(self, session: AsyncSession, job: MigrationJob) -> JobState:
        source, target = await self._deployments(session, job)
        if target is None or not target.endpoint:
            raise CutoverError("Cleanup target has no endpoint")
        tenant = await tenants_repo.require_tenant(session, job.tenant_id)
        await self._cutover.restore_ttl(source.routing_domain, target.endpoint)
        now = _utc_now()
        target.status = DeploymentStatus.ACTIVE.value
        target.activated_at = target.activated_at or now
        # Source stays recoverable for the grace window; the decommission sweep removes it later.
        if source.status == DeploymentStatus.ACTIVE.value:
            source.status = DeploymentStatus.DRAINING.value
            source.draining_at = now
            source.decommission_after = now + timedelta(hours=self._settings.decommission_grace_hours)
        tenant.current_deployment_id = target.id
        if job.kind == JobKind.EMERGENCY.value:
            self._merge_metadata(job, followup_sync="scheduled")
        return JobState.COMPLETED


async def run_migration(job_id: str, *, sleep: Sleeper | None = None) -> MigrationJob:
    return await MigrationRunner(sleep=sleep).run(job_id)
