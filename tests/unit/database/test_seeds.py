# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for tenant database seeds."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from src.infrastructure.database.seeds import (
    DEFAULT_STORE_SETTINGS,
    seed_store_settings,
    seed_tenant_database,
)


def create_mock_result(rows: list) -> MagicMock:
    result = MagicMock()
    result.all.return_value = rows
    return result


class TestSeedStoreSettings:
    """Tests for seed_store_settings()."""

    @pytest.mark.asyncio
    async def test_inserts_defaults(self, mock_db, sample_store_id) -> None:
        mock_db.execute.return_value = create_mock_result(
            [(key,) for key in DEFAULT_STORE_SETTINGS]
        )

        inserted = await seed_store_settings(mock_db, sample_store_id)

        assert inserted == len(DEFAULT_STORE_SETTINGS)
        stmt = mock_db.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT" in sql
        assert "DO NOTHING" in sql
        assert "RETURNING" in sql

    @pytest.mark.asyncio
    async def test_reseed_inserts_nothing(self, mock_db, sample_store_id) -> None:
        mock_db.execute.return_value = create_mock_result([])

        assert await seed_store_settings(mock_db, sample_store_id) == 0

    @pytest.mark.asyncio
    async def test_overrides_replace_defaults(self, mock_db, sample_store_id) -> None:
        mock_db.execute.return_value = create_mock_result([])

        await seed_store_settings(
            mock_db, sample_store_id, overrides={"store.currency": {"value": "EUR"}}
        )

        stmt = mock_db.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert {"value": "EUR"} in params.values()
        assert {"value": "USD"} not in params.values()
        assert sample_store_id in params.values()


class TestSeedTenantDatabase:
    """Tests for seed_tenant_database()."""

    @pytest.mark.asyncio
    async def test_reports_counts_and_flushes(self, mock_db, sample_store_id) -> None:
        mock_db.execute.return_value = create_mock_result([("store.currency",)])

        result = await seed_tenant_database(mock_db, sample_store_id)

        assert result == {"store_settings": 1}
        mock_db.flush.assert_awaited_once()
