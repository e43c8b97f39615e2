"""
Celery task sweeping PROCESSING jobs whose fallback poller was lost,
e.g. because the API process restarted after submission.

The worker cannot see the API process's pollers, so it passes no registry.
Settings guarantee stale_job_minutes outlasts the polling window, which keeps
the sweep off jobs a live poller still owns.
"""
import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings
from app.services.provider_gateway import KieGateway
from app.services.reconciler import sweep_stale_jobs
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _reconcile_stale_jobs_async() -> dict:
    # Fresh engine per run: asyncpg connections cannot cross event loops
    worker_engine = create_async_engine(
        settings.database_url,
        echo=False,
        poolclass=NullPool,
    )
    WorkerSessionLocal = async_sessionmaker(
        worker_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    gateway = KieGateway.from_settings()
    try:
        return await sweep_stale_jobs(WorkerSessionLocal, gateway)
    finally:
        await gateway.aclose()
        await worker_engine.dispose()


@celery_app.task(name="reconcile_stale_jobs")
def reconcile_stale_jobs_task() -> dict:
    """
    Check stale PROCESSING jobs against the provider once each.
    Scheduled by Celery beat every 5 minutes.
    """
    start_time = time.time()
    counts = asyncio.run(_reconcile_stale_jobs_async())
    logger.info(
        f"reconcile_stale_jobs done in {time.time() - start_time:.2f}s",
        extra={"event": "reconcile_stale_jobs", "duration_ms": round((time.time() - start_time) * 1000, 2), **counts},
    )
    return counts
