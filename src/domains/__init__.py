# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for Storefleet.

This package contains domain services that encapsulate business logic
on top of the master database.

Domains:
    jobs: Cross-store job queue.
    provisioning: Store lifecycle and tenant database provisioning.
"""
