# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database seed package.

This package contains seed data for initializing tenant databases.
"""

from src.infrastructure.database.seeds.tenant import (
    DEFAULT_STORE_SETTINGS,
    seed_store_settings,
    seed_tenant_database,
)

__all__ = ["DEFAULT_STORE_SETTINGS", "seed_store_settings", "seed_tenant_database"]
