# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities.

All timestamps are stored in UTC (PostgreSQL TIMESTAMPTZ) and every Python
datetime handled by the codebase is timezone-aware.

Usage:
------
    from src.utils.datetime import utc_now

    now = utc_now()
    created_at = Column(DateTime(timezone=True), default=utc_now)
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def seconds_from_now(seconds: float, now: datetime | None = None) -> datetime:
    """Get a UTC datetime the given number of seconds after now."""
    return (now or utc_now()) + timedelta(seconds=seconds)


def hours_ago(hours: int) -> datetime:
    """Get UTC datetime for N hours ago."""
    return utc_now() - timedelta(hours=hours)
