# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job queue endpoints.

This module provides endpoints for submitting and tracking per-store jobs:
- POST / - Submit a job for the store in the X-Store-Id header
  (with a cron_expression the job recurs after each completion)
- GET / - List the store's jobs
- GET /statistics - Job counts by status
- GET /{id} - Job status and progress
- GET /{id}/details - Job with its execution history
- POST /{id}/cancel - Cancel a pending job
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.api.dependencies import MasterDB, StoreId, TenantManager
from src.domains.jobs.service import JobNotFoundError, JobQueueService
from src.infrastructure.database.models import Job, JobHistory, JobPriority, JobStatus
from src.infrastructure.database.tenant_manager import StoreNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


class SubmitJobRequest(BaseModel):
    """Request to submit a job."""

    type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Job type, e.g. akeneo:import:products",
    )
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Job priority")
    payload: dict[str, Any] = Field(default_factory=dict, description="Handler input")
    max_retries: int | None = Field(None, ge=0, le=20, description="Retry budget")
    delay: float = Field(default=0, ge=0, description="Seconds before the job may run")
    user_id: UUID | None = Field(None, description="Submitting user")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Annotations")
    cron_expression: str | None = Field(
        None,
        max_length=100,
        description="Five-field cron schedule (UTC); the job re-runs after each completion",
    )


class JobResponse(BaseModel):
    """Job status and progress."""

    id: str
    store_id: str | None
    type: str
    priority: str
    status: str
    progress: int
    progress_message: str | None
    result: dict[str, Any] | None
    last_error: str | None
    retry_count: int
    max_retries: int
    cron_expression: str | None
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime | None


class JobHistoryEntry(BaseModel):
    """One recorded execution attempt."""

    status: str
    result: dict[str, Any] | None
    error: dict[str, Any] | None
    executed_at: datetime


class JobDetailsResponse(BaseModel):
    """Job with payload, metadata and execution history."""

    job: JobResponse
    payload: dict[str, Any]
    metadata: dict[str, Any]
    history: list[JobHistoryEntry]


class JobListResponse(BaseModel):
    """Page of a store's jobs."""

    items: list[JobResponse]
    limit: int
    offset: int


class JobStatisticsResponse(BaseModel):
    """Job counts within a time window."""

    window_hours: int
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    success_rate: float


def _to_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        store_id=job.store_id,
        type=job.type,
        priority=job.priority,
        status=job.status,
        progress=job.progress,
        progress_message=job.progress_message,
        result=job.result,
        last_error=job.last_error,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        cron_expression=job.cron_expression,
        scheduled_at=job.scheduled_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        failed_at=job.failed_at,
        cancelled_at=job.cancelled_at,
        created_at=job.created_at,
    )


def _history_entry(entry: JobHistory) -> JobHistoryEntry:
    return JobHistoryEntry(
        status=entry.status,
        result=entry.result,
        error=entry.error,
        executed_at=entry.executed_at,
    )


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(
    request: SubmitJobRequest,
    store_id: StoreId,
    manager: TenantManager,
    db: MasterDB,
) -> JobResponse:
    """Submit a job for the store named in the request header."""
    record = await manager.directory.lookup(store_id)
    if record is None:
        raise StoreNotFoundError(store_id)

    service = JobQueueService(db)
    options: dict[str, Any] = dict(
        store_id=record.store_id,
        job_type=request.type,
        priority=request.priority,
        payload=request.payload,
        max_retries=request.max_retries,
        user_id=str(request.user_id) if request.user_id else None,
        metadata=request.metadata,
    )
    try:
        if request.cron_expression:
            job = await service.submit_recurring(
                cron_expression=request.cron_expression, **options
            )
        else:
            job = await service.submit(delay=request.delay, **options)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    return _to_response(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    store_id: StoreId,
    manager: TenantManager,
    db: MasterDB,
    job_status: JobStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> JobListResponse:
    """List the jobs of the store named in the request header."""
    record = await manager.directory.lookup(store_id)
    if record is None:
        raise StoreNotFoundError(store_id)

    jobs = await JobQueueService(db).list_jobs(
        record.store_id, status=job_status, limit=limit, offset=offset
    )
    return JobListResponse(
        items=[_to_response(job) for job in jobs],
        limit=limit,
        offset=offset,
    )


@router.get("/statistics", response_model=JobStatisticsResponse)
async def job_statistics(
    db: MasterDB,
    window_hours: int = Query(24, ge=1, le=24 * 90),
    store_id: UUID | None = Query(None, description="Restrict to one store"),
) -> JobStatisticsResponse:
    """Get job counts by status for the last window_hours."""
    stats = await JobQueueService(db).statistics(
        window_hours=window_hours,
        store_id=str(store_id) if store_id else None,
    )
    return JobStatisticsResponse(**stats)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, db: MasterDB) -> JobResponse:
    """Get the status and progress of a job."""
    job = await JobQueueService(db).get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job not found: {job_id}")
    return _to_response(job)


@router.get("/{job_id}/details", response_model=JobDetailsResponse)
async def get_job_details(job_id: str, db: MasterDB) -> JobDetailsResponse:
    """Get a job with its payload and execution history."""
    details = await JobQueueService(db).get_details(job_id)
    if details is None:
        raise JobNotFoundError(f"Job not found: {job_id}")

    job = details["job"]
    return JobDetailsResponse(
        job=_to_response(job),
        payload=job.payload or {},
        metadata=job.metadata_ or {},
        history=[_history_entry(entry) for entry in details["history"]],
    )


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, db: MasterDB) -> JobResponse:
    """Cancel a job that has not started."""
    job = await JobQueueService(db).cancel(job_id)
    logger.info("Cancelled job %s via API", job_id)
    return _to_response(job)
