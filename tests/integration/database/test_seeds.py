# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for tenant database seeds.

Requires PostgreSQL to be running.
"""

import os

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from src.infrastructure.database.migrations.runner import run_tenant_migrations
from src.infrastructure.database.models import StoreSetting
from src.infrastructure.database.seeds import DEFAULT_STORE_SETTINGS, seed_tenant_database

pytestmark = pytest.mark.skipif(
    not os.environ.get("TEST_DATABASE_URL"),
    reason="TEST_DATABASE_URL not set",
)


@pytest_asyncio.fixture
async def migrated_session(tenant_db_session, tenant_db_url):
    await run_tenant_migrations(tenant_db_url)
    return tenant_db_session


async def count_settings(session, store_id: str) -> int:
    result = await session.execute(
        select(func.count(StoreSetting.id)).where(StoreSetting.store_id == store_id)
    )
    return result.scalar_one()


class TestTenantSeeds:
    """Test seeding a migrated tenant database."""

    @pytest.mark.asyncio
    async def test_seed_inserts_defaults(self, migrated_session, sample_store_id):
        result = await seed_tenant_database(migrated_session, sample_store_id)

        assert result == {"store_settings": len(DEFAULT_STORE_SETTINGS)}
        assert await count_settings(migrated_session, sample_store_id) == len(
            DEFAULT_STORE_SETTINGS
        )

    @pytest.mark.asyncio
    async def test_reseed_is_noop(self, migrated_session, sample_store_id):
        await seed_tenant_database(migrated_session, sample_store_id)

        result = await seed_tenant_database(migrated_session, sample_store_id)

        assert result == {"store_settings": 0}
        assert await count_settings(migrated_session, sample_store_id) == len(
            DEFAULT_STORE_SETTINGS
        )

    @pytest.mark.asyncio
    async def test_reseed_keeps_merchant_changes(self, migrated_session, sample_store_id):
        await seed_tenant_database(migrated_session, sample_store_id)
        setting = (
            await migrated_session.execute(
                select(StoreSetting).where(
                    StoreSetting.store_id == sample_store_id,
                    StoreSetting.key == "store.currency",
                )
            )
        ).scalar_one()
        setting.value = {"value": "EUR"}
        await migrated_session.flush()

        await seed_tenant_database(migrated_session, sample_store_id)
        await migrated_session.refresh(setting)

        assert setting.value == {"value": "EUR"}

    @pytest.mark.asyncio
    async def test_stores_seeded_independently(
        self, migrated_session, sample_store_id, other_store_id
    ):
        await seed_tenant_database(migrated_session, sample_store_id)

        result = await seed_tenant_database(migrated_session, other_store_id)

        assert result["store_settings"] == len(DEFAULT_STORE_SETTINGS)
