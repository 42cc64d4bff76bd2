from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Usage fields are refreshed by the usage collector; identity fields never change.
    budget_monthly: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    entity_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compliance_flags: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    latency_requirement_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    geo_regions: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    peak_concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Routing pointer to the single active deployment.
    current_deployment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class Deployment(Base):
    __tablename__ = "deployments"
    __table_args__ = (
        Index("ix_deployments_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    backend_kind: Mapped[str] = mapped_column(String, nullable=False)
    tier: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    routing_domain: Mapped[str] = mapped_column(String, nullable=False)
    endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    # Adapter-owned handles (compute/database/cache ids); never interpreted here.
    resource_handles: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    draining_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decommission_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decommissioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic versioning: concurrent writers of the same record fail instead of clobbering.
    __mapper_args__ = {"version_id_col": version}


class MigrationJob(Base):
    __tablename__ = "migration_jobs"
    __table_args__ = (
        Index("ix_migration_jobs_tenant_state", "tenant_id", "state"),
        Index("ix_migration_jobs_state_updated", "state", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False)
    source_deployment_id: Mapped[str] = mapped_column(String, nullable=False)
    target_deployment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_backend: Mapped[str] = mapped_column(String, nullable=False)
    target_tier: Mapped[str] = mapped_column(String, nullable=False)
    export_package_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Days of time-series history carried; None carries everything.
    retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Resume point for batch import: {"structured_done": bool, "batches_committed": int}.
    import_cursor: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    state_history: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Two runners advancing the same job fail fast instead of interleaving transitions.
    __mapper_args__ = {"version_id_col": version}


class MigrationLock(Base):
    __tablename__ = "migration_locks"

    # Primary-key uniqueness is the cross-instance mutex for per-tenant exclusivity.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    owner: Mapped[str | None] = mapped_column(String, nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class UsageSnapshot(Base):
    __tablename__ = "usage_snapshots"
    __table_args__ = (
        Index("ix_usage_snapshots_tenant_captured", "tenant_id", "captured_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    metrics_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)


class ExportPackageRecord(Base):
    __tablename__ = "export_packages"
    __table_args__ = (
        Index("ix_export_packages_expires", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    uri: Mapped[str] = mapped_column(String, nullable=False)
    schema_version: Mapped[str] = mapped_column(String, nullable=False)
    manifest_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred", "tenant_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
