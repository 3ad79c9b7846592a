# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job queue service backed by the master database.

This module provides the JobQueueService that handles:
- Job submission with priority, delay and retry budget
- Claiming jobs for workers with a time-bounded lease
- Completion, failure with backoff retries, and cancellation
- Recovery of jobs whose worker lease expired
- Recurring jobs: a cron expression re-enqueues the job after it completes
- Status queries, history and statistics

Claim order is urgent > high > normal > low, then scheduled_at, then
created_at. Claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers
never take the same job.

Example:
    >>> queue = JobQueueService(db_session)
    >>> job = await queue.submit(store_id, "akeneo:import:products", priority="high")
    >>> status = await queue.get_status(job.id)
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import JobQueueSettings, get_settings
from src.infrastructure.database.models import (
    Job,
    JobHistory,
    JobPriority,
    JobStatus,
    new_uuid,
)
from src.utils.datetime import hours_ago, seconds_from_now, utc_now

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "lease expired"


class JobServiceError(Exception):
    """Base exception for job queue errors."""

    pass


class JobNotFoundError(JobServiceError):
    """Raised when a job does not exist."""

    pass


class JobStateError(JobServiceError):
    """Raised when an operation is not allowed in the job's current status."""

    pass


@dataclass(frozen=True)
class JobStatusView:
    """Lightweight job status for polling clients."""

    id: str
    type: str
    status: str
    progress: int
    progress_message: str | None
    result: dict[str, Any] | None
    last_error: str | None
    retry_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def retry_delay(attempt: int, delays: Sequence[int]) -> int:
    """Backoff in seconds before the given retry attempt (1-based).

    Attempts past the end of the schedule reuse its last delay.
    """
    if not delays:
        return 0
    index = min(max(attempt, 1), len(delays)) - 1
    return delays[index]


def parse_cron(expression: str) -> CronTrigger:
    """Build a UTC trigger from a five-field crontab expression.

    Day-of-week numbers follow APScheduler (0 is Monday); names such as
    ``mon-fri`` read the same either way.

    Raises:
        ValueError: If the expression is not a valid cron expression.
    """
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {expression}")

    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone.utc,
    )


def next_run_time(expression: str, after: datetime) -> datetime | None:
    """First fire time of a cron expression strictly after ``after``."""
    trigger = parse_cron(expression)
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


_PRIORITY_RANK = case(
    {priority.value: priority.rank for priority in JobPriority},
    value=Job.priority,
    else_=JobPriority.NORMAL.rank,
)


class JobQueueService:
    """Service for the cross-store job queue.

    Each mutating operation commits, so claims and lease changes are
    visible to other workers immediately.
    """

    def __init__(self, db: AsyncSession, settings: JobQueueSettings | None = None) -> None:
        """Initialize the job queue service.

        Args:
            db: Master database session.
            settings: Queue settings; defaults to the application settings.
        """
        self._db = db
        self._settings = settings or get_settings().job_queue

    # -------------------------------------------------------------------------
    # Submission and queries
    # -------------------------------------------------------------------------

    async def submit(
        self,
        store_id: str | None,
        job_type: str,
        priority: str | JobPriority = JobPriority.NORMAL,
        payload: dict[str, Any] | None = None,
        max_retries: int | None = None,
        delay: float = 0,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Submit a new job.

        Args:
            store_id: Store the job works on.
            job_type: Job type, e.g. ``akeneo:import:products``.
            priority: low, normal, high or urgent.
            payload: Handler input.
            max_retries: Retry budget; defaults to the queue setting.
            delay: Seconds before the job becomes claimable.
            user_id: Submitting user.
            metadata: Free-form annotations.

        Returns:
            The pending job.

        Raises:
            ValueError: If the type is empty, the priority is unknown or
                max_retries is negative.
        """
        job = self._new_job(
            store_id,
            job_type,
            priority,
            payload,
            max_retries,
            scheduled_at=seconds_from_now(max(delay, 0)),
            user_id=user_id,
            metadata=metadata,
        )
        self._db.add(job)
        await self._db.commit()

        logger.info(
            "Submitted job %s: type=%s store=%s priority=%s",
            job.id,
            job.type,
            store_id,
            job.priority,
        )
        return job

    async def submit_recurring(
        self,
        store_id: str | None,
        job_type: str,
        cron_expression: str,
        priority: str | JobPriority = JobPriority.NORMAL,
        payload: dict[str, Any] | None = None,
        max_retries: int | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Submit a job that runs on a cron schedule.

        The job is scheduled for the next fire time of ``cron_expression``
        (five fields, UTC). Each time it completes, the next occurrence is
        enqueued as a new pending job.

        Raises:
            ValueError: If the cron expression is invalid or never fires,
                or for the same reasons as submit().
        """
        cron_expression = " ".join(cron_expression.split())
        first_run = next_run_time(cron_expression, utc_now())
        if first_run is None:
            raise ValueError(f"Cron expression never fires: {cron_expression}")

        job = self._new_job(
            store_id,
            job_type,
            priority,
            payload,
            max_retries,
            scheduled_at=first_run,
            user_id=user_id,
            metadata=metadata,
            cron_expression=cron_expression,
        )
        self._db.add(job)
        await self._db.commit()

        logger.info(
            "Submitted recurring job %s: type=%s store=%s cron=%r first run %s",
            job.id,
            job.type,
            store_id,
            cron_expression,
            first_run.isoformat(),
        )
        return job

    async def get_job(self, job_id: str) -> Job | None:
        """Get a job by id, or None."""
        if not _is_uuid(job_id):
            return None
        result = await self._db.execute(select(Job).where(Job.id == str(job_id)))
        return result.scalar_one_or_none()

    async def get_status(self, job_id: str) -> JobStatusView | None:
        """Get the current status and progress of a job, or None."""
        job = await self.get_job(job_id)
        if job is None:
            return None
        return JobStatusView(
            id=job.id,
            type=job.type,
            status=job.status,
            progress=job.progress,
            progress_message=job.progress_message,
            result=job.result,
            last_error=job.last_error,
            retry_count=job.retry_count,
        )

    async def get_details(self, job_id: str) -> dict[str, Any] | None:
        """Get a job together with its execution history, or None."""
        job = await self.get_job(job_id)
        if job is None:
            return None

        result = await self._db.execute(
            select(JobHistory)
            .where(JobHistory.job_id == job.id)
            .order_by(JobHistory.executed_at)
        )
        return {"job": job, "history": list(result.scalars().all())}

    async def list_jobs(
        self,
        store_id: str,
        status: str | JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List a store's jobs, newest first."""
        stmt = select(Job).where(Job.store_id == store_id)
        if status is not None:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)

        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def statistics(
        self, window_hours: int = 24, store_id: str | None = None
    ) -> dict[str, Any]:
        """Count jobs created within the window by status.

        Returns:
            Dict with total, per-status counts and success_rate (percent of
            finished jobs that completed).
        """
        stmt = (
            select(Job.status, func.count(Job.id))
            .where(Job.created_at >= hours_ago(window_hours))
            .group_by(Job.status)
        )
        if store_id is not None:
            stmt = stmt.where(Job.store_id == store_id)

        result = await self._db.execute(stmt)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            counts[status] = count

        finished = counts[JobStatus.COMPLETED.value] + counts[JobStatus.FAILED.value]
        success_rate = (
            round(counts[JobStatus.COMPLETED.value] / finished * 100, 2) if finished else 0.0
        )
        return {
            "window_hours": window_hours,
            "total": sum(counts.values()),
            **counts,
            "success_rate": success_rate,
        }

    # -------------------------------------------------------------------------
    # Worker operations
    # -------------------------------------------------------------------------

    async def claim_next(
        self,
        worker_id: str,
        lease_seconds: int | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """Claim the next due pending job for a worker.

        Returns:
            The claimed job, now running and leased to the worker, or None
            if no job is due.
        """
        now = now or utc_now()
        lease_seconds = lease_seconds or self._settings.lease_seconds

        result = await self._db.execute(
            select(Job)
            .where(Job.status == JobStatus.PENDING.value, Job.scheduled_at <= now)
            .order_by(_PRIORITY_RANK.desc(), Job.scheduled_at, Job.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            return None

        job.status = JobStatus.RUNNING.value
        job.started_at = now
        job.lease_owner = worker_id
        job.lease_expires_at = seconds_from_now(lease_seconds, now)
        await self._db.commit()

        logger.info(
            "Worker %s claimed job %s (%s, attempt %d)",
            worker_id,
            job.id,
            job.type,
            job.retry_count + 1,
        )
        return job

    async def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> Job:
        """Mark a running job completed.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not running (or is leased to
                another worker).
        """
        now = utc_now()
        job = await self._get_running(job_id, worker_id)

        job.status = JobStatus.COMPLETED.value
        job.result = result
        job.progress = 100
        job.completed_at = now
        job.lease_owner = None
        job.lease_expires_at = None
        self._add_history(job, JobStatus.COMPLETED, now, result=result)
        if job.cron_expression:
            self._schedule_next_occurrence(job, now)
        await self._db.commit()

        logger.info("Job %s completed", job.id)
        return job

    async def fail(
        self,
        job_id: str,
        error: str | BaseException,
        worker_id: str | None = None,
        permanent: bool = False,
    ) -> Job:
        """Record a failed attempt of a running job.

        The job goes back to pending with a backoff delay while retries
        remain; otherwise, or when ``permanent`` is set, it becomes failed
        terminally.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not running (or is leased to
                another worker).
        """
        job = await self._get_running(job_id, worker_id)
        self._record_failure(
            job, str(error) or type(error).__name__, utc_now(), permanent=permanent
        )
        await self._db.commit()
        return job

    async def cancel(self, job_id: str) -> Job:
        """Cancel a pending job.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is running or already finished.
        """
        job = await self._get_for_update(job_id)
        status = JobStatus(job.status)

        if status == JobStatus.RUNNING:
            raise JobStateError(f"Job {job.id} is running and cannot be cancelled")
        if job.is_terminal:
            raise JobStateError(f"Job {job.id} is already {status.value}")

        now = utc_now()
        job.status = JobStatus.CANCELLED.value
        job.cancelled_at = now
        self._add_history(job, JobStatus.CANCELLED, now)
        await self._db.commit()

        logger.info("Job %s cancelled", job.id)
        return job

    async def update_progress(
        self,
        job_id: str,
        progress: int,
        message: str | None = None,
        worker_id: str | None = None,
    ) -> Job:
        """Update progress (0-100) of a running job.

        Raises:
            ValueError: If progress is outside 0-100.
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not running.
        """
        if not 0 <= progress <= 100:
            raise ValueError("progress must be between 0 and 100")

        job = await self._get_running(job_id, worker_id)
        job.progress = progress
        if message is not None:
            job.progress_message = message
        await self._db.commit()
        return job

    async def renew_lease(
        self, job_id: str, worker_id: str, lease_seconds: int | None = None
    ) -> bool:
        """Extend a worker's lease on a running job.

        Returns:
            True if the lease was extended, False if the worker no longer
            holds it.
        """
        lease_seconds = lease_seconds or self._settings.lease_seconds
        result = await self._db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.RUNNING.value,
                Job.lease_owner == worker_id,
            )
            .values(lease_expires_at=seconds_from_now(lease_seconds))
        )
        await self._db.commit()
        return result.rowcount == 1

    async def recover_stale(self, now: datetime | None = None) -> int:
        """Treat running jobs with an expired lease as failed attempts.

        Returns:
            Number of jobs recovered.
        """
        now = now or utc_now()
        result = await self._db.execute(
            select(Job)
            .where(
                Job.status == JobStatus.RUNNING.value,
                Job.lease_expires_at.is_not(None),
                Job.lease_expires_at < now,
            )
            .with_for_update(skip_locked=True)
        )
        stale = list(result.scalars().all())
        if not stale:
            return 0

        for job in stale:
            logger.warning(
                "Lease of job %s held by %s expired at %s",
                job.id,
                job.lease_owner,
                job.lease_expires_at,
            )
            self._record_failure(job, LEASE_EXPIRED_ERROR, now)

        await self._db.commit()
        return len(stale)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _new_job(
        self,
        store_id: str | None,
        job_type: str,
        priority: str | JobPriority,
        payload: dict[str, Any] | None,
        max_retries: int | None,
        scheduled_at: datetime,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        cron_expression: str | None = None,
    ) -> Job:
        if not job_type or not job_type.strip():
            raise ValueError("Job type is required")
        priority = JobPriority(priority)
        if max_retries is None:
            max_retries = self._settings.default_max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        return Job(
            id=new_uuid(),
            store_id=store_id,
            user_id=user_id,
            type=job_type.strip(),
            priority=priority.value,
            status=JobStatus.PENDING.value,
            payload=dict(payload or {}),
            metadata_=dict(metadata or {}),
            retry_count=0,
            max_retries=max_retries,
            progress=0,
            scheduled_at=scheduled_at,
            cron_expression=cron_expression,
        )

    def _schedule_next_occurrence(self, job: Job, now: datetime) -> Job | None:
        next_run = next_run_time(job.cron_expression, now)
        if next_run is None:
            logger.warning(
                "Recurring job %s has no further run for %r", job.id, job.cron_expression
            )
            return None

        occurrence = self._new_job(
            job.store_id,
            job.type,
            job.priority,
            job.payload,
            job.max_retries,
            scheduled_at=next_run,
            user_id=job.user_id,
            metadata={**(job.metadata_ or {}), "recurrence_of": job.id},
            cron_expression=job.cron_expression,
        )
        self._db.add(occurrence)
        logger.info(
            "Scheduled next run of recurring job %s as %s at %s",
            job.id,
            occurrence.id,
            next_run.isoformat(),
        )
        return occurrence

    def _record_failure(
        self, job: Job, error: str, now: datetime, permanent: bool = False
    ) -> None:
        attempt = job.retry_count + 1
        will_retry = not permanent and attempt <= job.max_retries

        job.last_error = error
        job.lease_owner = None
        job.lease_expires_at = None

        if will_retry:
            delay = retry_delay(attempt, self._settings.retry_delays)
            job.retry_count = attempt
            job.status = JobStatus.PENDING.value
            job.scheduled_at = seconds_from_now(delay, now)
            logger.warning(
                "Job %s failed (retry %d/%d in %ss): %s",
                job.id,
                attempt,
                job.max_retries,
                delay,
                error,
            )
        else:
            job.status = JobStatus.FAILED.value
            job.failed_at = now
            logger.error(
                "Job %s failed permanently after %d retries: %s",
                job.id,
                job.retry_count,
                error,
            )

        self._add_history(
            job,
            JobStatus.FAILED,
            now,
            error={"message": error, "attempt": attempt, "will_retry": will_retry},
        )

    def _add_history(
        self,
        job: Job,
        status: JobStatus,
        executed_at: datetime,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        self._db.add(
            JobHistory(
                id=new_uuid(),
                job_id=job.id,
                status=status.value,
                result=result,
                error=error,
                executed_at=executed_at,
            )
        )

    async def _get_for_update(self, job_id: str) -> Job:
        if not _is_uuid(job_id):
            raise JobNotFoundError(f"Job {job_id} not found")

        result = await self._db.execute(
            select(Job).where(Job.id == str(job_id)).with_for_update()
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def _get_running(self, job_id: str, worker_id: str | None) -> Job:
        job = await self._get_for_update(job_id)
        if job.status != JobStatus.RUNNING.value:
            raise JobStateError(f"Job {job.id} is {job.status}, not running")
        if worker_id is not None and job.lease_owner != worker_id:
            raise JobStateError(f"Job {job.id} is not leased to worker {worker_id}")
        return job
