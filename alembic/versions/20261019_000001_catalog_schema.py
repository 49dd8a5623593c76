"""catalog schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "database_host",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("host", sa.String(length=255), nullable=False),
        sa.Column("port", sa.Integer(), nullable=False, server_default="5432"),
        sa.Column("region", sa.String(length=50), nullable=False, server_default="default"),
        sa.Column("tier", sa.String(length=20), nullable=False, server_default="shared"),
        sa.Column("max_tenants", sa.Integer(), nullable=False, server_default="70"),
        sa.Column("current_tenants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disk_capacity_gb", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("disk_usage_gb", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "tenant",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("database_name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("database_host_id", sa.String(length=36), sa.ForeignKey("database_host.id"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="provisioning"),
        sa.Column("tier", sa.String(length=20), nullable=False, server_default="shared"),
        sa.Column("credentials_blob", sa.JSON(), nullable=False),
        sa.Column("provisioning_details", sa.JSON(), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_tenant_organization_id", "tenant", ["organization_id"], unique=True)
    op.create_index("ix_tenant_database_host_id", "tenant", ["database_host_id"])
    op.create_index("ix_tenant_status", "tenant", ["status"])

    op.create_table(
        "migration_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenant.id"), nullable=False),
        sa.Column("migration_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
    )
    op.create_index("ix_migration_log_tenant_id", "migration_log", ["tenant_id"])

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenant.id"), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_activity_log_tenant_id", "activity_log", ["tenant_id"])
    op.create_index("ix_activity_log_severity_created_at", "activity_log", ["severity", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_activity_log_severity_created_at", table_name="activity_log")
    op.drop_index("ix_activity_log_tenant_id", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index("ix_migration_log_tenant_id", table_name="migration_log")
    op.drop_table("migration_log")
    op.drop_index("ix_tenant_status", table_name="tenant")
    op.drop_index("ix_tenant_database_host_id", table_name="tenant")
    op.drop_index("ix_tenant_organization_id", table_name="tenant")
    op.drop_table("tenant")
    op.drop_table("database_host")
