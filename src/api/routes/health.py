# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Health check endpoints.

This module provides health and readiness endpoints for the API.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

router = APIRouter()

# Track server start time for uptime calculation
_server_start_time = time.time()


class ComponentHealth(BaseModel):
    """Individual component health status."""
    status: str = Field(description="Component status")
    latency_ms: float | None = Field(None, description="Response latency in ms")
    message: str | None = Field(None, description="Additional status message")


class TenantPoolsHealth(BaseModel):
    """Tenant connection pool summary."""
    status: str = Field(description="Resolver status")
    cached_stores: int = Field(0, description="Stores with an open engine")


class ComponentsHealth(BaseModel):
    """All components health status."""
    master_database: ComponentHealth | None = None
    tenant_pools: TenantPoolsHealth | None = None


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(description="Overall health status")
    timestamp: datetime = Field(description="Current server timestamp")
    version: str = Field(description="API version")
    environment: str = Field(description="Deployment environment")
    uptime_seconds: int = Field(description="Server uptime in seconds")
    components: ComponentsHealth = Field(default_factory=ComponentsHealth)


class ReadinessResponse(BaseModel):
    """Readiness check response model."""
    ready: bool = Field(description="Whether the service is ready")
    checks: dict[str, Any] = Field(description="Individual check results")


async def check_master_database() -> ComponentHealth:
    """Check the master PostgreSQL database connection."""
    try:
        from sqlalchemy import text
        from src.infrastructure.database.connection import get_master_engine

        engine = get_master_engine()
        start = time.time()

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        latency = (time.time() - start) * 1000
        return ComponentHealth(status="healthy", latency_ms=round(latency, 2))
    except Exception as e:
        logger.error("Master database health check failed: %s", e)
        return ComponentHealth(status="unhealthy", message=str(e))


def check_tenant_pools() -> TenantPoolsHealth:
    """Summarize the resolver's cached tenant engines."""
    from src.api import dependencies

    manager = dependencies._tenant_db_manager
    if manager is None:
        return TenantPoolsHealth(status="unavailable")
    return TenantPoolsHealth(status="healthy", cached_stores=len(manager.cached_stores()))


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check if the API is healthy with component details.

    Returns:
        HealthResponse with detailed status.
    """
    from src.api.app import API_VERSION
    from src.core.config import get_settings

    settings = get_settings()
    now = datetime.now(timezone.utc)
    uptime = int(time.time() - _server_start_time)

    db_health = await check_master_database()
    pools = check_tenant_pools()

    if db_health.status != "healthy":
        overall_status = "unhealthy"
    elif pools.status != "healthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return HealthResponse(
        status=overall_status,
        timestamp=now,
        version=API_VERSION,
        environment=settings.environment,
        uptime_seconds=uptime,
        components=ComponentsHealth(master_database=db_health, tenant_pools=pools),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check() -> ReadinessResponse:
    """Check if the API is ready to accept traffic.

    Returns:
        ReadinessResponse with individual check results.
    """
    db_health = await check_master_database()
    pools = check_tenant_pools()

    checks: dict[str, Any] = {
        "master_database": {"status": db_health.status, "latency_ms": db_health.latency_ms},
        "tenant_pools": {"status": pools.status},
    }
    ready = db_health.status == "healthy" and pools.status == "healthy"
    return ReadinessResponse(ready=ready, checks=checks)
