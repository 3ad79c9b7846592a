# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the migration runner and idempotent migration helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import sqlalchemy as sa

from src.infrastructure.database.migrations import helpers
from src.infrastructure.database.migrations.runner import (
    MIGRATIONS,
    AppliedMigration,
    MigrationError,
    _get_pending_migrations,
    load_upgrade,
    migration_version,
    run_migrations,
)

RUNNER = "src.infrastructure.database.migrations.runner"


@pytest.fixture
def inspector():
    """Patch the helpers' schema inspector and alembic op."""
    insp = MagicMock()
    insp.has_table.return_value = False
    insp.get_columns.return_value = []
    insp.get_indexes.return_value = []
    with (
        patch.object(helpers, "_inspector", return_value=insp),
        patch.object(helpers, "op") as op,
    ):
        insp.op = op
        yield insp


class TestMigrationList:
    """Tests for migration ordering and lookup."""

    def test_tenant_order(self) -> None:
        assert MIGRATIONS["tenant"] == ["001_initial_schema", "002_add_store_settings"]
        assert MIGRATIONS["master"] == ["001_initial_schema", "002_add_job_recurrence"]

    def test_migration_version(self) -> None:
        assert migration_version("tenant", None) == 0
        assert migration_version("tenant", "001_initial_schema") == 1
        assert migration_version("tenant", "002_add_store_settings") == 2

    @pytest.mark.parametrize("target", ["master", "tenant"])
    def test_every_migration_has_upgrade(self, target) -> None:
        for revision in MIGRATIONS[target]:
            assert callable(load_upgrade(target, revision))

    def test_load_unknown_revision(self) -> None:
        with pytest.raises(ImportError):
            load_upgrade("tenant", "999_missing")


class TestPendingMigrations:
    """Tests for _get_pending_migrations()."""

    def test_fresh_database(self) -> None:
        assert _get_pending_migrations("tenant", None) == MIGRATIONS["tenant"]

    def test_partially_migrated(self) -> None:
        assert _get_pending_migrations("tenant", "001_initial_schema") == [
            "002_add_store_settings"
        ]

    def test_up_to_date(self) -> None:
        assert _get_pending_migrations("tenant", "002_add_store_settings") == []

    def test_target_revision(self) -> None:
        assert _get_pending_migrations("tenant", None, "001_initial_schema") == [
            "001_initial_schema"
        ]

    def test_unknown_current_version(self) -> None:
        assert _get_pending_migrations("tenant", "042_from_the_future") == []

    def test_unknown_target_revision(self) -> None:
        assert _get_pending_migrations("tenant", None, "042_from_the_future") == []


class TestRunMigrations:
    """Tests for run_migrations() with the database calls patched out."""

    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.dispose = AsyncMock()
        with patch(f"{RUNNER}.create_async_engine", return_value=engine):
            yield engine

    @pytest.mark.asyncio
    async def test_applies_pending_in_order(self, engine) -> None:
        with (
            patch(f"{RUNNER}._ensure_version_table", new=AsyncMock()),
            patch(f"{RUNNER}._get_current_version", new=AsyncMock(return_value=None)),
            patch(f"{RUNNER}._apply_migration", new=AsyncMock()) as apply,
        ):
            applied = await run_migrations("postgresql+asyncpg://u:p@h/db", target="tenant")

        assert [m.name for m in applied] == ["001_initial_schema", "002_add_store_settings"]
        assert [m.version for m in applied] == [1, 2]
        assert all(isinstance(m, AppliedMigration) for m in applied)
        assert [c.args[2] for c in apply.await_args_list] == MIGRATIONS["tenant"]
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, engine) -> None:
        with (
            patch(f"{RUNNER}._ensure_version_table", new=AsyncMock()),
            patch(
                f"{RUNNER}._get_current_version",
                new=AsyncMock(return_value="002_add_store_settings"),
            ),
            patch(f"{RUNNER}._apply_migration", new=AsyncMock()) as apply,
        ):
            applied = await run_migrations("postgresql+asyncpg://u:p@h/db")

        assert applied == []
        apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_stops_and_disposes(self, engine) -> None:
        failure = MigrationError("002_add_store_settings", RuntimeError("boom"))
        with (
            patch(f"{RUNNER}._ensure_version_table", new=AsyncMock()),
            patch(f"{RUNNER}._get_current_version", new=AsyncMock(return_value=None)),
            patch(f"{RUNNER}._apply_migration", new=AsyncMock(side_effect=[None, failure])),
        ):
            with pytest.raises(MigrationError) as exc_info:
                await run_migrations("postgresql+asyncpg://u:p@h/db")

        assert exc_info.value.revision == "002_add_store_settings"
        assert "boom" in str(exc_info.value)
        engine.dispose.assert_awaited_once()


class TestIdempotentHelpers:
    """Tests for the check-then-act migration helpers."""

    def test_create_table_when_missing(self, inspector) -> None:
        column = sa.Column("id", sa.Integer, primary_key=True)

        assert helpers.create_table_if_not_exists("store_settings", column) is True
        inspector.op.create_table.assert_called_once_with("store_settings", column)

    def test_create_table_skips_existing(self, inspector) -> None:
        inspector.has_table.return_value = True

        assert helpers.create_table_if_not_exists("store_settings") is False
        inspector.op.create_table.assert_not_called()

    def test_add_column_skips_existing(self, inspector) -> None:
        inspector.has_table.return_value = True
        inspector.get_columns.return_value = [{"name": "id"}, {"name": "currency"}]

        added = helpers.add_column_if_not_exists("orders", sa.Column("currency", sa.String(3)))

        assert added is False
        inspector.op.add_column.assert_not_called()

    def test_add_column_when_missing(self, inspector) -> None:
        inspector.has_table.return_value = True
        inspector.get_columns.return_value = [{"name": "id"}]

        assert helpers.add_column_if_not_exists("orders", sa.Column("currency", sa.String(3)))
        inspector.op.add_column.assert_called_once()

    def test_drop_column_missing_table(self, inspector) -> None:
        assert helpers.drop_column_if_exists("orders", "currency") is False
        inspector.op.drop_column.assert_not_called()

    def test_create_index_skips_existing(self, inspector) -> None:
        inspector.has_table.return_value = True
        inspector.get_indexes.return_value = [{"name": "ix_orders_store_id"}]

        created = helpers.create_index_if_not_exists(
            "ix_orders_store_id", "orders", ["store_id"]
        )

        assert created is False
        inspector.op.create_index.assert_not_called()

    def test_create_index_when_missing(self, inspector) -> None:
        inspector.has_table.return_value = True

        helpers.create_index_if_not_exists("ix_orders_store_id", "orders", ("store_id",), unique=True)

        inspector.op.create_index.assert_called_once_with(
            "ix_orders_store_id", "orders", ["store_id"], unique=True
        )

    def test_drop_table_when_present(self, inspector) -> None:
        inspector.has_table.return_value = True

        assert helpers.drop_table_if_exists("store_settings") is True
        inspector.op.drop_table.assert_called_once_with("store_settings")
