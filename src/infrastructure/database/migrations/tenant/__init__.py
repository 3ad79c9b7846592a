# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database migrations.

Contains migrations for per-store tables:
- Catalog (products)
- Customers and orders
- Store settings
"""
