# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API v1 routes package.

This package contains all v1 API endpoint definitions.
Each module provides a FastAPI router for a specific domain.

Modules:
    jobs: Job queue endpoints (submit, status, details, cancel, statistics).
    stores: Store lifecycle and tenant database endpoints.
"""

from fastapi import APIRouter

from src.api.v1 import jobs, stores

# Create the main v1 router
router = APIRouter(prefix="/api/v1")

# Include domain routers
router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
router.include_router(stores.router, prefix="/stores", tags=["Stores"])

__all__ = ["router"]
