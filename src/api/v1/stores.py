# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store administration endpoints.

This module provides endpoints for the store lifecycle and its tenant database:
- POST / - Create store
- GET /{id} - Get store
- POST /{id}/database - Connect, migrate and seed the tenant database
- POST /{id}/rotate-credentials - Replace the tenant database credentials
- POST /{id}/deprovision - Revoke credentials and deactivate
- POST /{id}/hostnames - Route a hostname to the store
- GET /{id}/connection - Non-sensitive connection details
- POST /{id}/test-connection - Ping the tenant database
- POST /{id}/suspend - Suspend store
- POST /{id}/activate - Activate store
- POST /{id}/demo - Put store in demo mode
- POST /{id}/deactivate - Deactivate store
- GET /{id}/health - Status, connectivity and migration state

{id} accepts a store id, slug or hostname.
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field, SecretStr

from src.api.dependencies import MasterDB, TenantManager
from src.domains.provisioning.service import SLUG_PATTERN, StoreProvisioningService
from src.infrastructure.database.models import Store
from src.infrastructure.database.tenant_manager import (
    StoreNotFoundError,
    TenantDatabaseManager,
)
from src.infrastructure.security import DatabaseCredentials

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateStoreRequest(BaseModel):
    """Request to create a store."""

    slug: str = Field(
        ...,
        min_length=1,
        max_length=63,
        pattern=SLUG_PATTERN.pattern,
        description="Unique store slug (lowercase DNS label)",
    )
    name: str | None = Field(None, min_length=1, max_length=255, description="Display name")
    hostnames: list[str] = Field(default_factory=list, description="Hostnames routed to the store")


class DatabaseCredentialsRequest(BaseModel):
    """Connection parameters of a tenant database."""

    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(..., min_length=1, max_length=63)
    username: str = Field(..., min_length=1, max_length=63)
    password: SecretStr
    ssl: bool = False

    def to_credentials(self) -> DatabaseCredentials:
        return DatabaseCredentials(
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password.get_secret_value(),
            ssl=self.ssl,
        )


class RotateCredentialsRequest(DatabaseCredentialsRequest):
    """New credentials, optionally without a connectivity check."""

    verify: bool = True


class SuspendStoreRequest(BaseModel):
    """Request to suspend a store."""

    reason: str | None = Field(None, max_length=500, description="Suspension reason")


class AddHostnameRequest(BaseModel):
    """Request to route a hostname to a store."""

    hostname: str = Field(..., min_length=1, max_length=255, description="Custom domain")
    is_primary: bool = False


class HostnameResponse(BaseModel):
    """Hostname mapping."""

    id: str
    store_id: str
    hostname: str
    is_primary: bool


class StoreResponse(BaseModel):
    """Store summary."""

    id: str
    slug: str
    name: str
    status: str
    provisioned_at: datetime | None
    suspended_at: datetime | None
    created_at: datetime | None


class ConnectionInfoResponse(BaseModel):
    """Tenant database connection details, without secrets."""

    store_id: str
    database_name: str
    host: str
    port: int
    username: str
    ssl: bool


class ConnectionTestResponse(BaseModel):
    """Result of a tenant database connection test."""

    store_id: str
    status: str
    ok: bool
    latency_ms: float | None
    error: str | None


def _to_response(store: Store) -> StoreResponse:
    return StoreResponse(
        id=store.id,
        slug=store.slug,
        name=store.name,
        status=store.status,
        provisioned_at=store.provisioned_at,
        suspended_at=store.suspended_at,
        created_at=store.created_at,
    )


async def _store_id(identifier: str, manager: TenantDatabaseManager) -> str:
    record = await manager.directory.lookup(identifier)
    if record is None:
        raise StoreNotFoundError(identifier)
    return record.store_id


@router.post("", response_model=StoreResponse, status_code=status.HTTP_201_CREATED)
async def create_store(
    request: CreateStoreRequest,
    db: MasterDB,
    manager: TenantManager,
) -> StoreResponse:
    """Register a store awaiting its tenant database."""
    service = StoreProvisioningService(db, manager)
    try:
        store = await service.create_store(
            slug=request.slug,
            name=request.name,
            hostnames=request.hostnames,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    return _to_response(store)


@router.get("/{store}", response_model=StoreResponse)
async def get_store(store: str, db: MasterDB, manager: TenantManager) -> StoreResponse:
    """Get a store by id, slug or hostname."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.get_store(store_id))


@router.post("/{store}/database", response_model=StoreResponse)
async def connect_database(
    store: str,
    request: DatabaseCredentialsRequest,
    db: MasterDB,
    manager: TenantManager,
) -> StoreResponse:
    """Attach a tenant database, migrate and seed it."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.connect_database(store_id, request.to_credentials()))


@router.post("/{store}/rotate-credentials", status_code=status.HTTP_204_NO_CONTENT)
async def rotate_credentials(
    store: str,
    request: RotateCredentialsRequest,
    db: MasterDB,
    manager: TenantManager,
) -> None:
    """Replace the tenant database credentials of a store."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    await service.rotate_credentials(store_id, request.to_credentials(), verify=request.verify)


@router.post("/{store}/deprovision", response_model=StoreResponse)
async def deprovision_store(store: str, db: MasterDB, manager: TenantManager) -> StoreResponse:
    """Revoke a store's database credentials and deactivate it."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.deprovision(store_id))


@router.post(
    "/{store}/hostnames",
    response_model=HostnameResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_hostname(
    store: str,
    request: AddHostnameRequest,
    db: MasterDB,
    manager: TenantManager,
) -> HostnameResponse:
    """Route a custom hostname to a store."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    try:
        entry = await service.add_hostname(
            store_id, request.hostname, is_primary=request.is_primary
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    return HostnameResponse(
        id=entry.id,
        store_id=entry.store_id,
        hostname=entry.hostname,
        is_primary=entry.is_primary,
    )


@router.get("/{store}/connection", response_model=ConnectionInfoResponse)
async def get_connection_info(store: str, manager: TenantManager) -> ConnectionInfoResponse:
    """Get the non-sensitive connection details of a store's tenant database."""
    info = await manager.get_connection_info(store)
    return ConnectionInfoResponse(
        store_id=info.store_id,
        database_name=info.database_name,
        host=info.host,
        port=info.port,
        username=info.username,
        ssl=info.ssl,
    )


@router.post("/{store}/test-connection", response_model=ConnectionTestResponse)
async def test_connection(store: str, manager: TenantManager) -> ConnectionTestResponse:
    """Ping a store's tenant database and record the result."""
    result = await manager.test_connection(store)
    return ConnectionTestResponse(
        store_id=result.store_id,
        status=result.status.value,
        ok=result.ok,
        latency_ms=result.latency_ms,
        error=result.error,
    )


@router.post("/{store}/suspend", response_model=StoreResponse)
async def suspend_store(
    store: str,
    db: MasterDB,
    manager: TenantManager,
    request: SuspendStoreRequest | None = None,
) -> StoreResponse:
    """Suspend a store."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    reason = request.reason if request else None
    return _to_response(await service.suspend(store_id, reason=reason))


@router.post("/{store}/activate", response_model=StoreResponse)
async def activate_store(store: str, db: MasterDB, manager: TenantManager) -> StoreResponse:
    """Activate a store."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.activate(store_id))


@router.post("/{store}/demo", response_model=StoreResponse)
async def set_demo_store(store: str, db: MasterDB, manager: TenantManager) -> StoreResponse:
    """Put a store in demo mode."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.set_demo(store_id))


@router.post("/{store}/deactivate", response_model=StoreResponse)
async def deactivate_store(store: str, db: MasterDB, manager: TenantManager) -> StoreResponse:
    """Deactivate a store."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return _to_response(await service.deactivate(store_id))


@router.get("/{store}/health")
async def store_health(store: str, db: MasterDB, manager: TenantManager) -> dict[str, Any]:
    """Get a store's status, tenant database connectivity and migration state."""
    store_id = await _store_id(store, manager)
    service = StoreProvisioningService(db, manager)
    return await service.check_health(store_id)
