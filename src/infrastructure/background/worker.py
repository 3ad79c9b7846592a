# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job worker polling the master database queue.

The worker claims due jobs, runs the handler registered for each job type
and records the outcome through JobQueueService. Every poll cycle also
recovers jobs whose lease expired (e.g. after a worker crash).

Example:
    from src.infrastructure.background.worker import JobWorker

    worker = JobWorker(settings, tenant_manager=manager)

    @worker.handler("akeneo:import:products")
    async def import_products(ctx: JobContext) -> dict:
        handle = await ctx.resolve_tenant()
        async with handle.session() as session:
            ...
        await ctx.report_progress(50, "Half way")
        return {"imported": 120}

    await worker.start()
    ...
    await worker.stop()
"""

import asyncio
import logging
import os
import socket
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from src.domains.jobs.service import JobQueueService, JobStateError
from src.infrastructure.database.connection import get_master_session
from src.infrastructure.database.models import Job
from src.infrastructure.database.tenant_manager import TenantResolutionError
from src.utils.logging import bind_context, clear_context

if TYPE_CHECKING:
    from src.core.config.settings import Settings
    from src.infrastructure.database.tenant_manager import (
        TenantDatabaseManager,
        TenantHandle,
    )

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
JobHandler = Callable[["JobContext"], Awaitable[dict[str, Any] | None]]


def default_worker_id() -> str:
    """Unique id for this worker process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class JobContext:
    """What a handler gets to work with for one job attempt.

    Attributes:
        job_id: Job being executed.
        job_type: Job type.
        store_id: Store the job works on, if any.
        payload: Job input.
        attempt: 1-based attempt number.
        worker_id: Worker executing the job.
    """

    job_id: str
    job_type: str
    store_id: str | None
    payload: dict[str, Any]
    attempt: int
    worker_id: str
    _worker: "JobWorker" = field(repr=False)

    async def resolve_tenant(self) -> "TenantHandle":
        """Resolve the tenant database of the job's store.

        Raises:
            ValueError: If the job has no store.
            TenantResolutionError: If the store cannot be resolved.
        """
        if self.store_id is None:
            raise ValueError(f"Job {self.job_id} is not scoped to a store")
        return await self._worker.tenant_manager.resolve(self.store_id)

    async def report_progress(self, progress: int, message: str | None = None) -> None:
        """Record progress (0-100) on the job."""
        await self._worker._with_queue(
            lambda queue: queue.update_progress(
                self.job_id, progress, message, worker_id=self.worker_id
            )
        )


class JobWorker:
    """Asyncio worker executing jobs from the master database queue.

    Attributes:
        worker_id: Lease owner id used for claims.
    """

    def __init__(
        self,
        settings: "Settings",
        tenant_manager: "TenantDatabaseManager | None" = None,
        session_factory: SessionFactory = get_master_session,
        worker_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._queue_settings = settings.job_queue
        self._tenant_manager = tenant_manager
        self._session_factory = session_factory
        self.worker_id = worker_id or default_worker_id()
        self._handlers: dict[str, JobHandler] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    @property
    def tenant_manager(self) -> "TenantDatabaseManager":
        if self._tenant_manager is None:
            raise RuntimeError("JobWorker was created without a tenant manager")
        return self._tenant_manager

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for a job type."""
        if job_type in self._handlers:
            logger.warning("Replacing handler for job type %s", job_type)
        self._handlers[job_type] = handler

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of register()."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn)
            return fn

        return decorator

    async def _with_queue(self, operation: Callable[[JobQueueService], Awaitable[Any]]) -> Any:
        async with self._session_factory() as session:
            return await operation(JobQueueService(session, self._queue_settings))

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def run_once(self) -> int:
        """Run one poll cycle.

        Recovers stale leases, then claims as many due jobs as there are free
        slots and starts them.

        Returns:
            Number of jobs started.
        """
        recovered = await self._with_queue(lambda queue: queue.recover_stale())
        if recovered:
            logger.warning("Recovered %d jobs with expired leases", recovered)

        started = 0
        while len(self._tasks) < self._queue_settings.max_concurrent_jobs:
            job = await self._with_queue(
                lambda queue: queue.claim_next(
                    self.worker_id, self._queue_settings.lease_seconds
                )
            )
            if job is None:
                break

            task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
            started += 1

        return started

    async def start(self) -> None:
        """Start the poll loop in the background."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run(), name="job-worker")
        logger.info(
            "Job worker %s started (handlers: %s)",
            self.worker_id,
            ", ".join(sorted(self._handlers)) or "none",
        )

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Job poll cycle failed")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._queue_settings.poll_interval
                )
            except asyncio.TimeoutError:
                pass

    async def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for running jobs.

        Jobs still running after the timeout are cancelled; their leases
        expire and they are recovered by the next worker.
        """
        if not self._running:
            return

        timeout = self._queue_settings.shutdown_timeout if timeout is None else timeout
        self._running = False
        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if self._tasks:
            logger.info("Waiting up to %ss for %d running jobs", timeout, len(self._tasks))
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Cancelled %d jobs at shutdown", len(pending))

        logger.info("Job worker %s stopped", self.worker_id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Job task %s ended with an unrecorded error: %s",
                task.get_name(),
                error,
                exc_info=error,
            )

    async def _keep_lease(self, job_id: str) -> None:
        interval = max(self._queue_settings.lease_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            renewed = await self._with_queue(
                lambda queue: queue.renew_lease(
                    job_id, self.worker_id, self._queue_settings.lease_seconds
                )
            )
            if not renewed:
                logger.warning("Lost lease on job %s", job_id)
                return

    async def _execute(self, job: Job) -> None:
        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            store_id=job.store_id,
            payload=dict(job.payload or {}),
            attempt=job.retry_count + 1,
            worker_id=self.worker_id,
            _worker=self,
        )
        bind_context(job_id=job.id, job_type=job.type, store_id=job.store_id)

        handler = self._handlers.get(job.type)
        if handler is None:
            logger.error("No handler registered for job type %s", job.type)
            try:
                await self._record_failure(
                    context, f"No handler registered for job type {job.type}", permanent=False
                )
            finally:
                clear_context()
            return

        lease_task = asyncio.create_task(self._keep_lease(job.id))
        try:
            result = await handler(context)
        except TenantResolutionError as e:
            logger.warning("Job %s could not resolve store: %s", job.id, e)
            await self._record_failure(context, f"{e.kind}: {e}", permanent=not e.retryable)
        except Exception as e:
            logger.exception("Job %s (%s) failed", job.id, job.type)
            await self._record_failure(context, e)
        else:
            try:
                await self._with_queue(
                    lambda queue: queue.complete(job.id, result, worker_id=self.worker_id)
                )
            except JobStateError as e:
                logger.warning("Could not complete job %s: %s", job.id, e)
        finally:
            lease_task.cancel()
            await asyncio.gather(lease_task, return_exceptions=True)
            clear_context()

    async def _record_failure(
        self, context: JobContext, error: str | BaseException, permanent: bool = False
    ) -> None:
        try:
            await self._with_queue(
                lambda queue: queue.fail(
                    context.job_id, error, worker_id=self.worker_id, permanent=permanent
                )
            )
        except JobStateError as e:
            logger.warning("Could not record failure of job %s: %s", context.job_id, e)


async def run_worker(settings: "Settings | None" = None) -> None:
    """Run a worker until interrupted."""
    from src.core.config import get_settings
    from src.infrastructure.database.connection import (
        close_master_database,
        init_master_database,
    )
    from src.infrastructure.database.tenant_manager import TenantDatabaseManager
    from src.utils.logging import setup_logging

    settings = settings or get_settings()
    setup_logging(settings)
    await init_master_database(settings)

    tenant_manager = TenantDatabaseManager(settings)
    worker = JobWorker(settings, tenant_manager=tenant_manager)
    await worker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await worker.stop()
        await tenant_manager.close_all()
        await close_master_database()


if __name__ == "__main__":
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass
