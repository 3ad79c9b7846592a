# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for PostgreSQL connections.

This package provides SQLAlchemy async database access for:
- Master database: Platform registry (stores, credentials, job queue)
- Tenant databases: One isolated database per store

Tenant databases are only reachable through a TenantHandle issued by
TenantDatabaseManager.resolve().

Example:
    from src.infrastructure.database import (
        get_master_session,
        TenantDatabaseManager,
    )

    async with get_master_session() as session:
        result = await session.execute(select(Store))

    manager = TenantDatabaseManager(settings)
    async with manager.get_session("acme") as session:
        result = await session.execute(select(Product))
"""

from src.infrastructure.database.connection import (
    DatabaseError,
    check_master_database_connection,
    close_master_database,
    get_master_engine,
    get_master_session,
    get_master_sessionmaker,
    init_master_database,
)
from src.infrastructure.database.scoping import (
    CrossStoreAccessError,
    StoreScopedSession,
    create_store_sessionmaker,
)
from src.infrastructure.database.store_directory import StoreDirectory, StoreRecord
from src.infrastructure.database.tenant_manager import (
    ConnectionTestResult,
    ConnectionTimeoutError,
    CredentialDecryptionError,
    StoreNotFoundError,
    StoreNotProvisionedError,
    TenantConnectionInfo,
    TenantDatabaseManager,
    TenantHandle,
    TenantResolutionError,
    create_tenant_engine,
)

__all__ = [
    # Master database
    "DatabaseError",
    "check_master_database_connection",
    "close_master_database",
    "get_master_engine",
    "get_master_session",
    "get_master_sessionmaker",
    "init_master_database",
    # Store directory
    "StoreDirectory",
    "StoreRecord",
    # Scoping
    "CrossStoreAccessError",
    "StoreScopedSession",
    "create_store_sessionmaker",
    # Tenant database
    "ConnectionTestResult",
    "TenantConnectionInfo",
    "TenantDatabaseManager",
    "TenantHandle",
    "create_tenant_engine",
    # Resolution errors
    "TenantResolutionError",
    "StoreNotFoundError",
    "StoreNotProvisionedError",
    "CredentialDecryptionError",
    "ConnectionTimeoutError",
]
