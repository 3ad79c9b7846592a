# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database seed data.

This module provides reference data inserted into a freshly migrated tenant
database:
- Default store settings (currency, locale, checkout, catalog)

Inserts use ON CONFLICT DO NOTHING, so re-seeding a store never overwrites
settings the merchant has changed.
"""

import asyncio
import logging
from typing import Any

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database.models import StoreSetting

logger = logging.getLogger(__name__)

DEFAULT_STORE_SETTINGS: dict[str, Any] = {
    "store.currency": {"value": "USD"},
    "store.locale": {"value": "en_US"},
    "store.timezone": {"value": "UTC"},
    "store.weight_unit": {"value": "kg"},
    "orders.number_prefix": {"value": "ORD-"},
    "orders.next_number": {"value": 1000},
    "checkout.guest_enabled": {"value": True},
    "checkout.terms_required": {"value": False},
    "catalog.products_per_page": {"value": 24},
    "catalog.show_out_of_stock": {"value": True},
    "tax.prices_include_tax": {"value": False},
    "email.sender_name": {"value": "My Store"},
}


async def seed_store_settings(
    session: AsyncSession,
    store_id: str,
    overrides: dict[str, Any] | None = None,
) -> int:
    """Insert default store settings that do not exist yet.

    Args:
        session: Tenant database session.
        store_id: Owning store.
        overrides: Values replacing the defaults for this seeding only.

    Returns:
        Number of rows inserted.
    """
    values = {**DEFAULT_STORE_SETTINGS, **(overrides or {})}
    rows = [
        {"store_id": store_id, "key": key, "value": value}
        for key, value in sorted(values.items())
    ]

    stmt = (
        insert(StoreSetting)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["store_id", "key"])
        .returning(StoreSetting.key)
    )
    result = await session.execute(stmt)
    inserted = len(result.all())

    logger.info("Seeded %d of %d store settings for store %s", inserted, len(rows), store_id)
    return inserted


async def seed_tenant_database(
    session: AsyncSession,
    store_id: str,
    settings_overrides: dict[str, Any] | None = None,
) -> dict:
    """Seed a tenant database with initial data.

    Safe to re-run: existing rows are left untouched.

    Args:
        session: Tenant database session.
        store_id: Owning store.
        settings_overrides: Optional store setting values to seed instead
            of the defaults.

    Returns:
        Dictionary with the number of inserted rows per entity.
    """
    logger.info("Seeding tenant database for store %s...", store_id)

    result = {
        "store_settings": await seed_store_settings(session, store_id, settings_overrides),
    }

    await session.flush()

    logger.info("Tenant database seeding complete for store %s", store_id)
    return result


if __name__ == "__main__":
    import os

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    async def main():
        database_url = os.environ["TENANT_DB_URL"]
        store_id = os.environ["STORE_ID"]
        engine = create_async_engine(database_url)
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        async with async_session() as session:
            await seed_tenant_database(session, store_id)
            await session.commit()
        await engine.dispose()

    asyncio.run(main())
