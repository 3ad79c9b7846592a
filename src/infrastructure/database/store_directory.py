# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store lookups against the master database.

The directory is the only place the tenant resolver reads master data from.
Each lookup reads the store's current status, so a suspension takes effect
on the next resolution without any cache invalidation.
"""

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database.connection import get_master_session
from src.infrastructure.database.models import (
    ConnectionStatus,
    Store,
    StoreDatabase,
    StoreHostname,
    StoreStatus,
)
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass(frozen=True)
class StoreRecord:
    """Routing view of a store and its active database credential.

    Attributes:
        store_id: Store primary key.
        slug: Store slug.
        status: Current lifecycle status.
        credential_blob: Sealed credentials of the active database row,
            or None when the store has no active database.
        database_type: Tenant database engine of the active row.
    """

    store_id: str
    slug: str
    status: StoreStatus
    credential_blob: str | None = None
    database_type: str | None = None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class StoreDirectory:
    """Reads store routing records from the master database."""

    def __init__(self, session_factory: SessionFactory = get_master_session) -> None:
        self._session_factory = session_factory

    async def lookup(self, identifier: str) -> StoreRecord | None:
        """Find a store by id, slug or hostname.

        Args:
            identifier: Store UUID, slug or a hostname mapped to the store.

        Returns:
            StoreRecord, or None if no store matches.
        """
        identifier = identifier.strip()
        if not identifier:
            return None

        stmt = select(
            Store.id,
            Store.slug,
            Store.status,
            StoreDatabase.connection_string_encrypted,
            StoreDatabase.database_type,
        ).outerjoin(
            StoreDatabase,
            and_(StoreDatabase.store_id == Store.id, StoreDatabase.is_active.is_(True)),
        )

        if _is_uuid(identifier):
            stmt = stmt.where(Store.id == identifier)
        else:
            hostname_match = (
                select(StoreHostname.store_id)
                .where(StoreHostname.hostname == identifier.lower())
                .scalar_subquery()
            )
            stmt = stmt.where((Store.slug == identifier) | (Store.id == hostname_match))

        async with self._session_factory() as session:
            row = (await session.execute(stmt.limit(1))).first()

        if row is None:
            return None

        return StoreRecord(
            store_id=str(row.id),
            slug=row.slug,
            status=StoreStatus(row.status),
            credential_blob=row.connection_string_encrypted,
            database_type=row.database_type,
        )

    async def record_connection_test(
        self, store_id: str, status: ConnectionStatus
    ) -> None:
        """Store the outcome of a connection test on the active database row."""
        async with self._session_factory() as session:
            await session.execute(
                update(StoreDatabase)
                .where(
                    StoreDatabase.store_id == store_id,
                    StoreDatabase.is_active.is_(True),
                )
                .values(connection_status=status.value, last_connection_test=utc_now())
            )
        logger.debug("Recorded connection test for store %s: %s", store_id, status.value)
