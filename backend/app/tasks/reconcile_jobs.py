"""
Celery tasks for background job reconciliation.
The beat sweep picks up jobs nobody is polling so they still reach a
terminal state and get their refunds.
"""
import asyncio
import logging
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.ai.factory import get_compute_provider
from app.config import settings
from app.services.errors import JobNotFoundError
from app.services.job_service import JobService
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _worker_sessionmaker():
    """
    Fresh engine per task run.
    Each task runs in its own event loop, so pooled connections cannot be shared.
    """
    engine = create_async_engine(settings.database_url, echo=False, poolclass=NullPool)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def run_sweep(limit: Optional[int] = None) -> Dict[str, int]:
    engine, session_local = _worker_sessionmaker()
    try:
        job_service = JobService(get_compute_provider())
        async with session_local() as db:
            return await job_service.sweep_active_jobs(db, limit=limit)
    finally:
        await engine.dispose()


async def run_reconcile(job_id: str) -> Dict[str, str]:
    engine, session_local = _worker_sessionmaker()
    try:
        job_service = JobService(get_compute_provider())
        async with session_local() as db:
            result = await job_service.reconcile(db, job_id)
            return {
                "job_id": job_id,
                "outcome": result.outcome.value,
                "status": result.job.status.value,
            }
    finally:
        await engine.dispose()


@celery_app.task(name="reconcile_active_jobs")
def reconcile_active_jobs_task(limit: Optional[int] = None) -> Dict[str, int]:
    """
    Reconcile a batch of non-terminal jobs, oldest first.

    Returns:
        Count of reconciliation outcomes
    """
    try:
        return asyncio.run(run_sweep(limit))
    except ValueError as e:
        # Provider not configured; nothing can be reconciled
        logger.warning(f"Skipping reconcile sweep: {e}", extra={"event": "reconcile_sweep_skipped"})
        return {}


@celery_app.task(name="reconcile_job", bind=True, max_retries=3, default_retry_delay=30)
def reconcile_job_task(self, job_id: str) -> Dict[str, str]:
    """Reconcile one job; transient provider errors are retried."""
    try:
        result = asyncio.run(run_reconcile(job_id))
    except JobNotFoundError:
        logger.error(f"Job {job_id} not found", extra={"event": "reconcile_missing_job", "job_id": job_id})
        return {"job_id": job_id, "outcome": "not_found"}

    if result["outcome"] == "transient_error":
        raise self.retry()
    return result
