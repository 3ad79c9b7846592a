# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Status and priority vocabularies shared by models, services and the API."""

from enum import Enum


class StoreStatus(str, Enum):
    """Lifecycle status of a store in the master registry."""

    PENDING_DATABASE = "pending_database"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    ACTIVE = "active"
    DEMO = "demo"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


# Statuses for which the tenant database may be handed out
USABLE_STORE_STATUSES = frozenset(
    {StoreStatus.PROVISIONED, StoreStatus.ACTIVE, StoreStatus.DEMO}
)

STORE_STATUS_TRANSITIONS: dict[StoreStatus, frozenset[StoreStatus]] = {
    StoreStatus.PENDING_DATABASE: frozenset({StoreStatus.PROVISIONING}),
    StoreStatus.PROVISIONING: frozenset(
        {StoreStatus.PROVISIONED, StoreStatus.PENDING_DATABASE}
    ),
    StoreStatus.PROVISIONED: frozenset(
        {
            StoreStatus.ACTIVE,
            StoreStatus.DEMO,
            StoreStatus.SUSPENDED,
            StoreStatus.INACTIVE,
        }
    ),
    StoreStatus.ACTIVE: frozenset(
        {StoreStatus.DEMO, StoreStatus.SUSPENDED, StoreStatus.INACTIVE}
    ),
    StoreStatus.DEMO: frozenset(
        {StoreStatus.ACTIVE, StoreStatus.SUSPENDED, StoreStatus.INACTIVE}
    ),
    StoreStatus.SUSPENDED: frozenset(
        {StoreStatus.ACTIVE, StoreStatus.DEMO, StoreStatus.INACTIVE}
    ),
    StoreStatus.INACTIVE: frozenset(),
}


class DatabaseType(str, Enum):
    """Supported tenant database engines."""

    POSTGRESQL = "postgresql"


class ConnectionStatus(str, Enum):
    """Result of the last connection test against a tenant database."""

    PENDING = "pending"
    CONNECTED = "connected"
    FAILED = "failed"
    TIMEOUT = "timeout"


class JobStatus(str, Enum):
    """Lifecycle status of a queued job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class JobPriority(str, Enum):
    """Job priority; higher rank is claimed first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}
