"""placement and migration schema

Revision ID: 0001_placement_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_placement_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("budget_monthly", sa.Float(), nullable=False, server_default="0"),
        sa.Column("entity_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("compliance_flags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("latency_requirement_ms", sa.Integer(), nullable=True),
        sa.Column("geo_regions", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("peak_concurrency", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_deployment_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "deployments",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("backend_kind", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("routing_domain", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("resource_handles", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("draining_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decommission_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decommissioned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_deployments_tenant_id", "deployments", ["tenant_id"], unique=False)
    op.create_index("ix_deployments_tenant_status", "deployments", ["tenant_id", "status"], unique=False)

    op.create_table(
        "migration_jobs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("source_deployment_id", sa.String(), nullable=False),
        sa.Column("target_deployment_id", sa.String(), nullable=True),
        sa.Column("target_backend", sa.String(), nullable=False),
        sa.Column("target_tier", sa.String(), nullable=False),
        sa.Column("export_package_id", sa.String(), nullable=True),
        sa.Column("retention_days", sa.Integer(), nullable=True),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("import_cursor", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("state_history", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_migration_jobs_tenant_id", "migration_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_migration_jobs_tenant_state", "migration_jobs", ["tenant_id", "state"], unique=False)
    op.create_index("ix_migration_jobs_state_updated", "migration_jobs", ["state", "updated_at"], unique=False)

    op.create_table(
        "migration_locks",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False, unique=True),
        sa.Column("owner", sa.String(), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "usage_snapshots",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("metrics_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index(
        "ix_usage_snapshots_tenant_captured",
        "usage_snapshots",
        ["tenant_id", "captured_at"],
        unique=False,
    )

    op.create_table(
        "export_packages",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("uri", sa.String(), nullable=False),
        sa.Column("schema_version", sa.String(), nullable=False),
        sa.Column("manifest_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_export_packages_job_id", "export_packages", ["job_id"], unique=False)
    op.create_index("ix_export_packages_tenant_id", "export_packages", ["tenant_id"], unique=False)
    op.create_index("ix_export_packages_expires", "export_packages", ["expires_at"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index(
        "ix_audit_events_tenant_occurred",
        "audit_events",
        ["tenant_id", sa.text("occurred_at DESC")],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_audit_events_tenant_occurred", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_export_packages_expires", table_name="export_packages")
    op.drop_index("ix_export_packages_tenant_id", table_name="export_packages")
    op.drop_index("ix_export_packages_job_id", table_name="export_packages")
    op.drop_table("export_packages")
    op.drop_index("ix_usage_snapshots_tenant_captured", table_name="usage_snapshots")
    op.drop_table("usage_snapshots")
    op.drop_table("migration_locks")
    op.drop_index("ix_migration_jobs_state_updated", table_name="migration_jobs")
    op.drop_index("ix_migration_jobs_tenant_state", table_name="migration_jobs")
    op.drop_index("ix_migration_jobs_tenant_id", table_name="migration_jobs")
    op.drop_table("migration_jobs")
    op.drop_index("ix_deployments_tenant_status", table_name="deployments")
    op.drop_index("ix_deployments_tenant_id", table_name="deployments")
    op.drop_table("deployments")
    op.drop_table("tenants")
