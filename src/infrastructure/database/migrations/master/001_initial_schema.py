# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Initial master database schema.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2025-01-06

Creates the store registry, encrypted credential table, hostname routing,
tenant migration ledger and the job queue. Safe to re-run.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from src.infrastructure.database.migrations.helpers import (
    create_index_if_not_exists,
    create_table_if_not_exists,
)

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("master",)
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=False),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def _store_fk(unique: bool = False, nullable: bool = False) -> sa.Column:
    return sa.Column(
        "store_id",
        postgresql.UUID(as_uuid=False),
        sa.ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=nullable,
        unique=unique,
    )


def upgrade() -> None:
    """Create master database tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # ==========================================================================
    # 1. stores
    # ==========================================================================
    create_table_if_not_exists(
        "stores",
        _id_column(),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False, server_default="My Store"),
        sa.Column(
            "status", sa.String(50), nullable=False, server_default="pending_database"
        ),
        sa.Column("owner_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending_database', 'provisioning', 'provisioned', "
            "'active', 'demo', 'suspended', 'inactive')",
            name="ck_stores_status",
        ),
    )
    create_index_if_not_exists("ix_stores_status", "stores", ["status"])

    # ==========================================================================
    # 2. store_databases
    # ==========================================================================
    create_table_if_not_exists(
        "store_databases",
        _id_column(),
        _store_fk(unique=True),
        sa.Column(
            "database_type", sa.String(50), nullable=False, server_default="postgresql"
        ),
        sa.Column("connection_string_encrypted", sa.Text, nullable=False),
        sa.Column("host", sa.String(255), nullable=True),
        sa.Column("port", sa.Integer, nullable=True),
        sa.Column("database_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column(
            "connection_status", sa.String(50), nullable=False, server_default="pending"
        ),
        sa.Column("last_connection_test", sa.DateTime(timezone=True), nullable=True),
        sa.Column("schema_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_migration_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credentials_rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "database_type IN ('postgresql')",
            name="ck_store_databases_database_type",
        ),
        sa.CheckConstraint(
            "connection_status IN ('pending', 'connected', 'failed', 'timeout')",
            name="ck_store_databases_connection_status",
        ),
    )
    create_index_if_not_exists(
        "ix_store_databases_is_active", "store_databases", ["is_active"]
    )

    # ==========================================================================
    # 3. store_hostnames
    # ==========================================================================
    create_table_if_not_exists(
        "store_hostnames",
        _id_column(),
        _store_fk(),
        sa.Column("hostname", sa.String(255), nullable=False, unique=True),
        sa.Column(
            "is_primary", sa.Boolean, nullable=False, server_default=sa.text("false")
        ),
        *_timestamps(),
    )
    create_index_if_not_exists(
        "ix_store_hostnames_store_id", "store_hostnames", ["store_id"]
    )

    # ==========================================================================
    # 4. tenant_migrations
    # ==========================================================================
    create_table_if_not_exists(
        "tenant_migrations",
        _id_column(),
        _store_fk(),
        sa.Column("migration_name", sa.String(255), nullable=False),
        sa.Column("migration_version", sa.Integer, nullable=False),
        sa.Column(
            "applied_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("success", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("execution_time_ms", sa.Integer, nullable=True),
        sa.UniqueConstraint(
            "store_id", "migration_name", name="uq_tenant_migrations_store_id"
        ),
    )
    create_index_if_not_exists(
        "ix_tenant_migrations_store_id", "tenant_migrations", ["store_id"]
    )

    # ==========================================================================
    # 5. jobs
    # ==========================================================================
    create_table_if_not_exists(
        "jobs",
        _id_column(),
        _store_fk(nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "payload", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column(
            "metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("progress_message", sa.Text, nullable=True),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'normal', 'high', 'urgent')",
            name="ck_jobs_priority",
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_jobs_retry_count_non_negative"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_jobs_progress_range"),
    )
    create_index_if_not_exists("ix_jobs_store_id", "jobs", ["store_id"])
    create_index_if_not_exists("ix_jobs_type", "jobs", ["type"])
    create_index_if_not_exists("ix_jobs_status", "jobs", ["status"])
    # Claim query: pending jobs by schedule
    create_index_if_not_exists(
        "ix_jobs_pending_scheduled",
        "jobs",
        ["scheduled_at", "created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    create_index_if_not_exists(
        "ix_jobs_running_lease",
        "jobs",
        ["lease_expires_at"],
        postgresql_where=sa.text("status = 'running'"),
    )

    # ==========================================================================
    # 6. job_history
    # ==========================================================================
    create_table_if_not_exists(
        "job_history",
        _id_column(),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error", postgresql.JSONB, nullable=True),
        sa.Column(
            "executed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    create_index_if_not_exists("ix_job_history_job_id", "job_history", ["job_id"])


def downgrade() -> None:
    """Drop master database tables."""
    op.drop_table("job_history")
    op.drop_table("jobs")
    op.drop_table("tenant_migrations")
    op.drop_table("store_hostnames")
    op.drop_table("store_databases")
    op.drop_table("stores")
