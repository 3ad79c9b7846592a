# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Add store settings and order currency.

Adds:
- store_settings: Key/value store configuration, unique per store and key
- orders.currency: ISO currency code, defaulting to USD

Revision ID: 002_add_store_settings
Revises: 001_initial_schema
Create Date: 2025-01-13
"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from src.infrastructure.database.migrations.helpers import (
    add_column_if_not_exists,
    create_index_if_not_exists,
    create_table_if_not_exists,
    drop_column_if_exists,
    drop_table_if_exists,
)

revision: str = "002_add_store_settings"
down_revision: str = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create store_settings and add orders.currency if missing."""
    create_table_if_not_exists(
        "store_settings",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("store_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("value", postgresql.JSONB, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("store_id", "key", name="uq_store_settings_store_id"),
    )
    create_index_if_not_exists(
        "ix_store_settings_store_id", "store_settings", ["store_id"]
    )

    add_column_if_not_exists(
        "orders",
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
    )


def downgrade() -> None:
    """Remove store_settings and orders.currency."""
    drop_column_if_exists("orders", "currency")
    drop_table_if_exists("store_settings")
