# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database migrations package.

This package contains idempotent migrations for:
- Master database: Store registry, credentials, job queue
- Tenant database: Per-store catalog, customers, orders, settings

Migrations are applied programmatically by runner.run_migrations().
"""
