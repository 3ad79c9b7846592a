# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning domain for store lifecycle management.

This package provides the StoreProvisioningService that creates stores,
attaches and migrates their tenant databases, and moves them through the
lifecycle statuses.
"""

from src.domains.provisioning.service import (
    InvalidStatusTransitionError,
    StoreAlreadyExistsError,
    StoreProvisioningError,
    StoreProvisioningService,
    StoreServiceError,
)

__all__ = [
    "StoreProvisioningService",
    "StoreServiceError",
    "StoreAlreadyExistsError",
    "InvalidStatusTransitionError",
    "StoreProvisioningError",
]
