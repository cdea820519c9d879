"""
Celery application configuration.
Sets up Celery with Redis broker and the periodic reconciliation sweep.
"""
import logging
from celery import Celery
from celery.signals import worker_process_init
from app.config import settings
from app.utils.logging import configure_logging
from app.workers.metrics_server import start_metrics_server

logger = logging.getLogger(__name__)

celery_app = Celery(
    "studio",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.reconcile_jobs"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,
    beat_schedule={
        "reconcile-active-jobs": {
            "task": "reconcile_active_jobs",
            "schedule": float(settings.reconcile_sweep_interval_seconds),
            # A sweep older than one interval is superseded by the next one
            "options": {"expires": settings.reconcile_sweep_interval_seconds},
        },
    },
)

configure_logging('studio-worker', settings.log_level)


@worker_process_init.connect
def start_worker_metrics(**kwargs):
    """Expose worker metrics once per worker process."""
    try:
        start_metrics_server(port=settings.worker_metrics_port)
    except OSError as e:
        logger.warning(f"Failed to start metrics server: {e}")
