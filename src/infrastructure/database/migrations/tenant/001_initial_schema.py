# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Initial tenant database schema.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2025-01-06

Creates the catalog, customer and order tables. Every table carries the
owning store_id. Safe to re-run.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from src.infrastructure.database.migrations.helpers import (
    create_index_if_not_exists,
    create_table_if_not_exists,
)

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("tenant",)
depends_on: Union[str, Sequence[str], None] = None


def _scoped_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("store_id", postgresql.UUID(as_uuid=False), nullable=False),
    ]


def _timestamps() -> list[sa.Column]:
    return [
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
    ]


def upgrade() -> None:
    """Create tenant catalog tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    create_table_if_not_exists(
        "products",
        *_scoped_columns(),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column(
            "attributes",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "sku", name="uq_products_store_id"),
    )
    create_index_if_not_exists("ix_products_store_id", "products", ["store_id"])

    create_table_if_not_exists(
        "customers",
        *_scoped_columns(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "email", name="uq_customers_store_id"),
    )
    create_index_if_not_exists("ix_customers_store_id", "customers", ["store_id"])

    create_table_if_not_exists(
        "orders",
        *_scoped_columns(),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column(
            "customer_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "order_number", name="uq_orders_store_id"),
    )
    create_index_if_not_exists("ix_orders_store_id", "orders", ["store_id"])
    create_index_if_not_exists("ix_orders_customer_id", "orders", ["customer_id"])


def downgrade() -> None:
    """Drop tenant catalog tables."""
    op.drop_table("orders")
    op.drop_table("customers")
    op.drop_table("products")
