# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Master database models.

The master database holds platform-wide registries only:
- stores: Store directory and lifecycle status
- store_databases: Encrypted tenant database credentials (one per store)
- store_hostnames: Hostname to store mapping
- tenant_migrations: Ledger of migrations applied to each tenant database
- jobs / job_history: Cross-store asynchronous job queue
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.infrastructure.database.models.base import (
    MasterBase,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
    new_uuid,
)
from src.infrastructure.database.models.enums import (
    STORE_STATUS_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    USABLE_STORE_STATUSES,
    ConnectionStatus,
    DatabaseType,
    JobPriority,
    JobStatus,
    StoreStatus,
)
from src.utils.datetime import utc_now


def _check_in(column: str, enum_cls: type) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Store(UUIDPrimaryKeyMixin, TimestampMixin, MasterBase):
    """Store registry entry.

    Full store data lives in the tenant database; the master keeps only what
    is needed to route requests and govern the lifecycle.
    """

    __tablename__ = "stores"
    __table_args__ = (
        CheckConstraint(_check_in("status", StoreStatus), name="status"),
    )

    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="My Store")
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=StoreStatus.PENDING_DATABASE.value,
        server_default=StoreStatus.PENDING_DATABASE.value,
        index=True,
    )
    owner_id: Mapped[str | None] = mapped_column(postgresql.UUID(as_uuid=False))
    provisioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    database: Mapped["StoreDatabase | None"] = relationship(
        back_populates="store", uselist=False, lazy="raise"
    )
    hostnames: Mapped[list["StoreHostname"]] = relationship(
        back_populates="store", lazy="raise"
    )

    @property
    def is_usable(self) -> bool:
        """Whether the tenant database may be handed out for this store."""
        return StoreStatus(self.status) in USABLE_STORE_STATUSES

    def can_transition_to(self, status: StoreStatus) -> bool:
        """Check the lifecycle transition table."""
        return status in STORE_STATUS_TRANSITIONS[StoreStatus(self.status)]


class StoreDatabase(UUIDPrimaryKeyMixin, TimestampMixin, MasterBase):
    """Encrypted tenant database credentials for one store."""

    __tablename__ = "store_databases"
    __table_args__ = (
        CheckConstraint(_check_in("database_type", DatabaseType), name="database_type"),
        CheckConstraint(
            _check_in("connection_status", ConnectionStatus), name="connection_status"
        ),
    )

    store_id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("stores.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    database_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DatabaseType.POSTGRESQL.value
    )
    # AES-256-GCM sealed JSON; see src.infrastructure.security.credentials
    connection_string_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    host: Mapped[str | None] = mapped_column(String(255))
    port: Mapped[int | None] = mapped_column(Integer)
    database_name: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    connection_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=ConnectionStatus.PENDING.value,
        server_default=ConnectionStatus.PENDING.value,
    )
    last_connection_test: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    schema_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_migration_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    credentials_rotated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    store: Mapped[Store] = relationship(back_populates="database", lazy="raise")


class StoreHostname(UUIDPrimaryKeyMixin, TimestampMixin, MasterBase):
    """Hostname or custom domain routed to a store."""

    __tablename__ = "store_hostnames"

    store_id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    hostname: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_primary: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    store: Mapped[Store] = relationship(back_populates="hostnames", lazy="raise")


class TenantMigration(UUIDPrimaryKeyMixin, MasterBase):
    """One migration applied (or attempted) on one store's tenant database."""

    __tablename__ = "tenant_migrations"
    __table_args__ = (UniqueConstraint("store_id", "migration_name"),)

    store_id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    migration_name: Mapped[str] = mapped_column(String(255), nullable=False)
    migration_version: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, server_default=text("now()")
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer)


class Job(UUIDPrimaryKeyMixin, TimestampMixin, MasterBase):
    """Asynchronous unit of work scoped to a store."""

    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(_check_in("status", JobStatus), name="status"),
        CheckConstraint(_check_in("priority", JobPriority), name="priority"),
        CheckConstraint("retry_count >= 0", name="retry_count_non_negative"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="progress_range"),
    )

    store_id: Mapped[str | None] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("stores.id", ondelete="CASCADE"),
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(postgresql.UUID(as_uuid=False))
    type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobPriority.NORMAL.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value, index=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        postgresql.JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb")
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(postgresql.JSONB)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        postgresql.JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(Text)
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lease_owner: Mapped[str | None] = mapped_column(String(255))
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cron_expression: Mapped[str | None] = mapped_column(String(100))

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached completed, failed or cancelled."""
        return JobStatus(self.status) in TERMINAL_JOB_STATUSES


class JobHistory(MasterBase):
    """Outcome of one execution attempt of a job."""

    __tablename__ = "job_history"

    id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False), primary_key=True, default=new_uuid
    )
    job_id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(postgresql.JSONB)
    error: Mapped[dict[str, Any] | None] = mapped_column(postgresql.JSONB)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
