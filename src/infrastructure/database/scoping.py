# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store scoping for tenant sessions.

Tenant sessions are bound to exactly one store. Reads are filtered to the
bound store's rows and writes carrying another store's id are rejected at
flush time, so a handle issued for store A cannot touch store B's data even
if both happened to share a physical database.

Example:
    sessionmaker = create_store_sessionmaker(engine, store_id)
    async with sessionmaker() as session:
        products = (await session.execute(select(Product))).scalars().all()
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from src.infrastructure.database.models.tenant import StoreScopedMixin

logger = logging.getLogger(__name__)

STORE_ID_KEY = "store_id"


class CrossStoreAccessError(Exception):
    """Raised when a session tries to write rows belonging to another store.

    Attributes:
        bound_store_id: Store the session is bound to.
        row_store_id: Store id found on the offending row.
    """

    def __init__(self, bound_store_id: str, row_store_id: str, entity: str) -> None:
        super().__init__(
            f"Session bound to store {bound_store_id} cannot write "
            f"{entity} belonging to store {row_store_id}"
        )
        self.bound_store_id = bound_store_id
        self.row_store_id = row_store_id


class StoreScopedSession(Session):
    """Synchronous session class carrying the bound store id in ``info``."""

    @property
    def store_id(self) -> str | None:
        return self.info.get(STORE_ID_KEY)


@event.listens_for(StoreScopedSession, "do_orm_execute")
def _filter_to_bound_store(execute_state: ORMExecuteState) -> None:
    store_id = execute_state.session.info.get(STORE_ID_KEY)
    if store_id is None:
        return

    if execute_state.is_column_load or execute_state.is_relationship_load:
        # criteria already propagate from the parent statement
        return

    if execute_state.is_select or execute_state.is_update or execute_state.is_delete:
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                StoreScopedMixin,
                lambda cls: cls.store_id == store_id,
                include_aliases=True,
            )
        )


@event.listens_for(StoreScopedSession, "before_flush")
def _check_store_ownership(session: Session, flush_context: Any, instances: Any) -> None:
    store_id = session.info.get(STORE_ID_KEY)
    if store_id is None:
        return

    for obj in list(session.new) + list(session.dirty):
        if not isinstance(obj, StoreScopedMixin):
            continue
        if obj.store_id is None:
            obj.store_id = store_id
        elif str(obj.store_id) != store_id:
            logger.warning(
                "Rejected cross-store write: session=%s row=%s entity=%s",
                store_id,
                obj.store_id,
                type(obj).__name__,
            )
            raise CrossStoreAccessError(store_id, str(obj.store_id), type(obj).__name__)

    for obj in session.deleted:
        if isinstance(obj, StoreScopedMixin) and str(obj.store_id) != store_id:
            raise CrossStoreAccessError(store_id, str(obj.store_id), type(obj).__name__)


def create_store_sessionmaker(
    bind: AsyncEngine | AsyncConnection, store_id: str
) -> async_sessionmaker[AsyncSession]:
    """Create an async sessionmaker whose sessions are bound to one store.

    Args:
        bind: Tenant engine or connection.
        store_id: Store the sessions are scoped to.

    Returns:
        Sessionmaker producing store-scoped AsyncSession instances.
    """
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        sync_session_class=StoreScopedSession,
        info={STORE_ID_KEY: store_id},
        expire_on_commit=False,
        autoflush=False,
    )
