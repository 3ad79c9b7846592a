# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Declarative bases and shared mixins.

Master and tenant schemas live in separate metadata collections so that
neither database can ever be created with the other's tables. The bases are
pure schema definitions: no engine is bound to them.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, MetaData, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.utils.datetime import utc_now

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def new_uuid() -> str:
    """Generate a new UUID string for primary keys."""
    return str(uuid4())


class MasterBase(DeclarativeBase):
    """Base class for master database models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TenantBase(DeclarativeBase):
    """Base class for tenant database models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class UUIDPrimaryKeyMixin:
    """UUID primary key generated client-side, with a server default."""

    id: Mapped[str] = mapped_column(
        postgresql.UUID(as_uuid=False),
        primary_key=True,
        default=new_uuid,
        server_default=text("gen_random_uuid()"),
    )


class TimestampMixin:
    """Created/updated timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        server_default=text("now()"),
    )
