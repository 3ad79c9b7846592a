# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Check-then-act helpers for idempotent migrations.

Every helper inspects the live schema before acting and is a no-op when the
desired state already holds, so a migration built from them can be applied
any number of times with the same end result. They must be called inside an
``Operations.context`` (see runner._run_upgrade_sync).

Example:
    def upgrade() -> None:
        create_table_if_not_exists(
            "store_settings",
            sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        )
        add_column_if_not_exists("orders", sa.Column("currency", sa.String(3)))
"""

import logging
from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine.reflection import Inspector

logger = logging.getLogger(__name__)


def _inspector() -> Inspector:
    # Fresh inspector each call; cached reflection would miss earlier steps
    return sa.inspect(op.get_bind())


def table_exists(table_name: str) -> bool:
    """Whether the table exists in the current database."""
    return _inspector().has_table(table_name)


def column_exists(table_name: str, column_name: str) -> bool:
    """Whether the table exists and has the column."""
    inspector = _inspector()
    if not inspector.has_table(table_name):
        return False
    return column_name in {col["name"] for col in inspector.get_columns(table_name)}


def index_exists(table_name: str, index_name: str) -> bool:
    """Whether the table exists and has an index with this name."""
    inspector = _inspector()
    if not inspector.has_table(table_name):
        return False
    return index_name in {ix["name"] for ix in inspector.get_indexes(table_name)}


def create_table_if_not_exists(table_name: str, *elements: sa.schema.SchemaItem, **kw) -> bool:
    """Create a table unless it already exists.

    Returns:
        True if the table was created.
    """
    if table_exists(table_name):
        logger.debug("Table %s already exists, skipping", table_name)
        return False
    op.create_table(table_name, *elements, **kw)
    return True


def drop_table_if_exists(table_name: str) -> bool:
    """Drop a table if it exists."""
    if not table_exists(table_name):
        return False
    op.drop_table(table_name)
    return True


def add_column_if_not_exists(table_name: str, column: sa.Column) -> bool:
    """Add a column unless the table already has it."""
    if column_exists(table_name, column.name):
        logger.debug("Column %s.%s already exists, skipping", table_name, column.name)
        return False
    op.add_column(table_name, column)
    return True


def drop_column_if_exists(table_name: str, column_name: str) -> bool:
    """Drop a column if the table has it."""
    if not column_exists(table_name, column_name):
        return False
    op.drop_column(table_name, column_name)
    return True


def create_index_if_not_exists(
    index_name: str,
    table_name: str,
    columns: Sequence[str],
    unique: bool = False,
    **kw,
) -> bool:
    """Create an index unless one with this name exists on the table."""
    if index_exists(table_name, index_name):
        logger.debug("Index %s already exists, skipping", index_name)
        return False
    op.create_index(index_name, table_name, list(columns), unique=unique, **kw)
    return True
