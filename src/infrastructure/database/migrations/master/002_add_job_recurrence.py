# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Add cron schedules to jobs.

Adds:
- jobs.cron_expression: Five-field cron expression of a recurring job

Revision ID: 002_add_job_recurrence
Revises: 001_initial_schema
Create Date: 2025-02-03
"""

from typing import Sequence, Union

import sqlalchemy as sa

from src.infrastructure.database.migrations.helpers import (
    add_column_if_not_exists,
    drop_column_if_exists,
)

revision: str = "002_add_job_recurrence"
down_revision: str = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add jobs.cron_expression if missing."""
    add_column_if_not_exists(
        "jobs",
        sa.Column("cron_expression", sa.String(100), nullable=True),
    )


def downgrade() -> None:
    """Remove jobs.cron_expression."""
    drop_column_if_exists("jobs", "cron_expression")
