# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Jobs domain.

This package provides the JobQueueService for the cross-store job queue
kept in the master database.
"""

from src.domains.jobs.service import (
    LEASE_EXPIRED_ERROR,
    JobNotFoundError,
    JobQueueService,
    JobServiceError,
    JobStateError,
    JobStatusView,
    retry_delay,
)

__all__ = [
    "JobQueueService",
    "JobStatusView",
    "JobServiceError",
    "JobNotFoundError",
    "JobStateError",
    "LEASE_EXPIRED_ERROR",
    "retry_delay",
]
