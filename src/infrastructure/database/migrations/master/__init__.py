# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Master database migrations.

Contains migrations for platform-wide tables:
- stores: Store registry and lifecycle status
- store_databases: Encrypted tenant database credentials
- store_hostnames: Hostname routing
- tenant_migrations: Per-store migration ledger
- jobs, job_history: Cross-store job queue
"""
