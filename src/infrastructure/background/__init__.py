# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background job processing.

Jobs are queued in the master database and executed by JobWorker, an asyncio
poll loop that claims jobs with a lease and dispatches them to registered
handlers.

Quick Start:
    from src.infrastructure.background import JobContext, JobWorker

    worker = JobWorker(settings, tenant_manager=manager)

    @worker.handler("akeneo:import:products")
    async def import_products(ctx: JobContext) -> dict:
        handle = await ctx.resolve_tenant()
        ...

    await worker.start()

Running Workers:
    python -m src.infrastructure.background.worker
"""

from src.infrastructure.background.worker import (
    JobContext,
    JobHandler,
    JobWorker,
    default_worker_id,
    run_worker,
)

__all__ = [
    "JobContext",
    "JobHandler",
    "JobWorker",
    "default_worker_id",
    "run_worker",
]
