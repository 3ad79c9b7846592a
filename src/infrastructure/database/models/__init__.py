# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the master and tenant databases."""

from src.infrastructure.database.models.base import (
    MasterBase,
    TenantBase,
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
from src.infrastructure.database.models.master import (
    Job,
    JobHistory,
    Store,
    StoreDatabase,
    StoreHostname,
    TenantMigration,
)
from src.infrastructure.database.models.tenant import (
    Customer,
    Order,
    Product,
    StoreScopedMixin,
    StoreSetting,
)

__all__ = [
    # Bases
    "MasterBase",
    "TenantBase",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "StoreScopedMixin",
    "new_uuid",
    # Enums
    "ConnectionStatus",
    "DatabaseType",
    "JobPriority",
    "JobStatus",
    "StoreStatus",
    "STORE_STATUS_TRANSITIONS",
    "TERMINAL_JOB_STATUSES",
    "USABLE_STORE_STATUSES",
    # Master
    "Job",
    "JobHistory",
    "Store",
    "StoreDatabase",
    "StoreHostname",
    "TenantMigration",
    # Tenant
    "Customer",
    "Order",
    "Product",
    "StoreSetting",
]
