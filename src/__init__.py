"""Storefleet Backend.

Multi-tenant store administration: a master database of stores and jobs,
and one tenant database per store reached through the connection resolver.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
