# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for database migrations.

Tests migration execution against real databases.
Requires PostgreSQL to be running.
"""

import os

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.infrastructure.database.migrations.runner import (
    MIGRATIONS,
    apply_upgrade,
    check_migrations_pending,
    get_migration_status,
    run_master_migrations,
    run_tenant_migrations,
)

# Skip all tests if database is not available
pytestmark = pytest.mark.skipif(
    not os.environ.get("TEST_DATABASE_URL"),
    reason="TEST_DATABASE_URL not set",
)


async def schema_snapshot(engine: AsyncEngine) -> dict[str, tuple]:
    """Tables with their columns and indexes, for comparing schema states."""

    def snapshot(sync_conn) -> dict[str, tuple]:
        inspector = inspect(sync_conn)
        return {
            table: (
                sorted(col["name"] for col in inspector.get_columns(table)),
                sorted(ix["name"] for ix in inspector.get_indexes(table)),
            )
            for table in inspector.get_table_names()
        }

    async with engine.connect() as conn:
        return await conn.run_sync(snapshot)


class TestMasterMigrations:
    """Test master database migrations."""

    @pytest.mark.asyncio
    async def test_creates_tables(self, master_db_engine, master_db_url):
        applied = await run_master_migrations(master_db_url)

        assert [m.name for m in applied] == MIGRATIONS["master"]
        tables = await schema_snapshot(master_db_engine)
        for table in [
            "stores",
            "store_databases",
            "store_hostnames",
            "tenant_migrations",
            "jobs",
            "job_history",
        ]:
            assert table in tables, f"Table {table} not found"

    @pytest.mark.asyncio
    async def test_store_databases_columns(self, master_db_engine, master_db_url):
        await run_master_migrations(master_db_url)

        columns, _ = (await schema_snapshot(master_db_engine))["store_databases"]

        for col in [
            "store_id",
            "connection_string_encrypted",
            "is_active",
            "connection_status",
            "schema_version",
            "credentials_rotated_at",
        ]:
            assert col in columns, f"Column {col} not found in store_databases table"

    @pytest.mark.asyncio
    async def test_job_recurrence_column(self, master_db_engine, master_db_url):
        await run_master_migrations(master_db_url)

        columns, _ = (await schema_snapshot(master_db_engine))["jobs"]

        assert "cron_expression" in columns
        assert await run_master_migrations(master_db_url) == []


class TestTenantMigrations:
    """Test tenant database migrations."""

    @pytest.mark.asyncio
    async def test_fresh_database(self, tenant_db_engine, tenant_db_url):
        applied = await run_tenant_migrations(tenant_db_url)

        assert [m.version for m in applied] == [1, 2]
        tables = await schema_snapshot(tenant_db_engine)
        assert {"products", "customers", "orders", "store_settings"} <= set(tables)
        assert "currency" in tables["orders"][0]
        assert await check_migrations_pending(tenant_db_url) is False

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, tenant_db_engine, tenant_db_url):
        await run_tenant_migrations(tenant_db_url)
        before = await schema_snapshot(tenant_db_engine)

        assert await run_tenant_migrations(tenant_db_url) == []
        assert await schema_snapshot(tenant_db_engine) == before

    @pytest.mark.asyncio
    async def test_reapplying_upgrades_is_harmless(self, tenant_db_engine, tenant_db_url):
        """Every upgrade() may run again on a database that already has it."""
        await run_tenant_migrations(tenant_db_url)
        before = await schema_snapshot(tenant_db_engine)

        for revision in MIGRATIONS["tenant"]:
            await apply_upgrade(tenant_db_engine, "tenant", revision)
            await apply_upgrade(tenant_db_engine, "tenant", revision)

        assert await schema_snapshot(tenant_db_engine) == before

    @pytest.mark.asyncio
    async def test_partial_schema_completed(self, tenant_db_engine, tenant_db_url):
        """A database where a later migration half-ran is brought up to date."""
        await run_tenant_migrations(tenant_db_url, target_revision="001_initial_schema")
        async with tenant_db_engine.begin() as conn:
            await conn.execute(
                text("ALTER TABLE orders ADD COLUMN currency VARCHAR(3) DEFAULT 'USD'")
            )

        applied = await run_tenant_migrations(tenant_db_url)

        assert [m.name for m in applied] == ["002_add_store_settings"]
        tables = await schema_snapshot(tenant_db_engine)
        assert "store_settings" in tables

    @pytest.mark.asyncio
    async def test_status(self, tenant_db_engine, tenant_db_url):
        await run_tenant_migrations(tenant_db_url, target_revision="001_initial_schema")

        status = await get_migration_status(tenant_db_url)

        assert status["current_version"] == "001_initial_schema"
        assert status["pending_migrations"] == ["002_add_store_settings"]
        assert status["is_up_to_date"] is False
