# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- Unit tests
- Integration tests
"""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from src.core.config.settings import (
    EncryptionSettings,
    JobQueueSettings,
    Settings,
    TenantDatabaseSettings,
)
from src.infrastructure.security import DatabaseCredentials

# Fixed 256-bit test key (hex)
TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (requires services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a test encryption key and fast queue timings."""
    return Settings(
        environment="development",
        debug=True,
        encryption=EncryptionSettings(key=TEST_ENCRYPTION_KEY),  # type: ignore[arg-type]
        tenant_db=TenantDatabaseSettings(connect_timeout=0.1),
        job_queue=JobQueueSettings(
            poll_interval=0.01,
            max_concurrent_jobs=2,
            lease_seconds=60,
            retry_delays=[5, 30, 300, 1800],
            shutdown_timeout=1.0,
        ),
    )


# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def mock_db():
    """Create mock database session."""
    db = AsyncMock()
    db.add = MagicMock()
    db.delete = AsyncMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.execute = AsyncMock()
    return db


@pytest.fixture
def sample_store_id() -> str:
    """Provide a sample store ID for testing."""
    return "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def other_store_id() -> str:
    """Provide a second store ID for isolation tests."""
    return "550e8400-e29b-41d4-a716-446655440099"


@pytest.fixture
def sample_credentials() -> DatabaseCredentials:
    """Provide sample tenant database credentials."""
    return DatabaseCredentials(
        host="tenant-db.internal",
        port=5432,
        database="store_acme",
        username="acme_app",
        password="s3cret-acme",
    )


@pytest.fixture
def rejecting_engine_factory():
    """Engine factory whose driver refuses the login, like a wrong password."""

    def factory(credentials, pool_settings):
        async def connect():
            raise asyncpg.exceptions.InvalidPasswordError(
                f'password authentication failed for user "{credentials.username}"'
            )

        return create_async_engine("postgresql+asyncpg://", async_creator=connect)

    return factory
