"""
Celery application configuration.
Sets up Celery with Redis broker and result backend, plus the beat
schedule for the stale-job sweep.
"""
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_ready
from prometheus_client import start_http_server
from app.config import settings
from app.utils.logging import configure_logging

logger = logging.getLogger(__name__)

WORKER_METRICS_PORT = 9090

celery_app = Celery(
    "veoreel",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.tasks.reconcile_jobs",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,
    worker_concurrency=2,
    beat_schedule={
        "reconcile-stale-jobs": {
            "task": "reconcile_stale_jobs",
            "schedule": crontab(minute="*/5"),
        },
    },
)

# Configure structured JSON logging
configure_logging('vr-worker', settings.log_level)


@worker_ready.connect
def start_worker_metrics(sender=None, **kwargs):
    """Expose worker metrics for Prometheus once the worker is up."""
    try:
        start_http_server(WORKER_METRICS_PORT)
        logger.info(f"Metrics server started on port {WORKER_METRICS_PORT}")
    except OSError as e:
        logger.warning(f"Failed to start metrics server: {e}")
