# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database models.

Each store owns a physically separate tenant database. Every tenant row still
carries the owning ``store_id`` so that a session opened for one store can
verify it never reads or writes another store's data (see
src.infrastructure.database.scoping).
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.infrastructure.database.models.base import (
    TenantBase,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)


class StoreScopedMixin:
    """Marks a model as belonging to exactly one store."""

    store_id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False), nullable=False, index=True
    )


class Product(UUIDPrimaryKeyMixin, StoreScopedMixin, TimestampMixin, TenantBase):
    """Catalog product."""

    __tablename__ = "products"
    __table_args__ = (UniqueConstraint("store_id", "sku"),)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    attributes: Mapped[dict[str, Any]] = mapped_column(
        postgresql.JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb")
    )


class Customer(UUIDPrimaryKeyMixin, StoreScopedMixin, TimestampMixin, TenantBase):
    """Storefront customer."""

    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("store_id", "email"),)

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))

    orders: Mapped[list["Order"]] = relationship(back_populates="customer", lazy="raise")


class Order(UUIDPrimaryKeyMixin, StoreScopedMixin, TimestampMixin, TenantBase):
    """Customer order."""

    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("store_id", "order_number"),)

    order_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(
        postgresql.UUID(as_uuid=False),
        ForeignKey("customers.id", ondelete="SET NULL"),
        index=True,
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    customer: Mapped[Customer | None] = relationship(back_populates="orders", lazy="raise")


class StoreSetting(UUIDPrimaryKeyMixin, StoreScopedMixin, TimestampMixin, TenantBase):
    """Key/value store configuration."""

    __tablename__ = "store_settings"
    __table_args__ = (UniqueConstraint("store_id", "key"),)

    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Any] = mapped_column(postgresql.JSONB, nullable=True)
