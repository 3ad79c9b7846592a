# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI dependency injection definitions.

This module provides dependency functions for FastAPI endpoints.
Dependencies are used to:
- Get master database sessions
- Get the tenant database manager
- Resolve the store a request is about to a tenant handle

Example:
    @router.get("/products")
    async def list_products(
        handle: TenantHandle = Depends(get_tenant_handle),
    ):
        async with handle.session() as session:
            ...
"""

import logging
from typing import Annotated, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import get_settings
from src.infrastructure.database.connection import (
    close_master_database,
    get_master_session,
    init_master_database,
)
from src.infrastructure.database.tenant_manager import TenantDatabaseManager, TenantHandle
from src.utils.logging import bind_context

logger = logging.getLogger(__name__)

# Tenant database manager singleton
_tenant_db_manager: TenantDatabaseManager | None = None


async def init_db() -> None:
    """Initialize the master database and the tenant database manager."""
    global _tenant_db_manager
    settings = get_settings()

    await init_master_database(settings)
    _tenant_db_manager = TenantDatabaseManager(settings)


async def close_db() -> None:
    """Dispose every tenant engine and the master engine."""
    global _tenant_db_manager

    if _tenant_db_manager:
        await _tenant_db_manager.close_all()
        _tenant_db_manager = None

    await close_master_database()


async def get_master_db() -> AsyncGenerator[AsyncSession, None]:
    """Get master database session.

    Yields:
        AsyncSession for the master database.
    """
    async with get_master_session() as session:
        yield session


def get_tenant_manager() -> TenantDatabaseManager:
    """Get the tenant database manager.

    Raises:
        HTTPException: If the manager is not initialized.
    """
    if not _tenant_db_manager:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tenant database manager not initialized",
        )
    return _tenant_db_manager


def get_store_id(request: Request) -> str:
    """Read the store identifier from the request header.

    Raises:
        HTTPException: If the header is missing or empty.
    """
    header = get_settings().api.store_header
    store_id = (request.headers.get(header) or "").strip()
    if not store_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} header required",
        )
    bind_context(store_id=store_id)
    return store_id


async def get_tenant_handle(
    store_id: Annotated[str, Depends(get_store_id)],
    manager: Annotated[TenantDatabaseManager, Depends(get_tenant_manager)],
) -> TenantHandle:
    """Resolve the request's store to a tenant handle.

    Resolution errors propagate and are mapped by the API error handlers.
    """
    return await manager.resolve(store_id)


# Type aliases for cleaner endpoint signatures
MasterDB = Annotated[AsyncSession, Depends(get_master_db)]
TenantManager = Annotated[TenantDatabaseManager, Depends(get_tenant_manager)]
StoreId = Annotated[str, Depends(get_store_id)]
Tenant = Annotated[TenantHandle, Depends(get_tenant_handle)]
