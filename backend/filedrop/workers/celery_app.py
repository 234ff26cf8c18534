"""
Celery application configuration.
Sets up Celery with Redis broker and result backend.

Used for broker-persisted webhook retries (webhook_scheduler=celery) and
the periodic cleanup tasks (soft-deleted uploads, API key usage rows).
"""
import logging
from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure, worker_process_init
from filedrop.config import settings
from filedrop.utils.metrics import worker_tasks_in_progress, worker_tasks_total
from filedrop.utils.logging import configure_logging
from filedrop.workers.metrics_server import start_metrics_server

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "filedrop",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "filedrop.tasks.deliver_webhook",
        "filedrop.tasks.purge_uploads",
        "filedrop.tasks.prune_api_key_usage",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,  # 5 minutes
    task_soft_time_limit=4 * 60,
    task_acks_late=True,  # Redeliver deliveries interrupted by a worker crash
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=500,
    beat_schedule={
        "purge-deleted-uploads": {
            "task": "purge_deleted_uploads",
            "schedule": float(settings.upload_purge_interval_seconds),
        },
        "prune-api-key-usage": {
            "task": "prune_api_key_usage",
            "schedule": float(settings.api_key_usage_prune_interval_seconds),
        },
    },
)


@worker_process_init.connect
def init_worker_process(**kwargs):
    """Configure logging and metrics in each worker process."""
    configure_logging('filedrop-worker', settings.log_level)
    try:
        start_metrics_server(port=settings.worker_metrics_port)
    except OSError as e:
        # Another child already bound the port
        logger.warning(f"Failed to start metrics server: {e}")


# Celery signal handlers for metrics
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, **kwds):
    """Track task start."""
    worker_tasks_in_progress.labels(task=task.name if task else "unknown").inc()


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, state=None, **kwds):
    """Track task completion."""
    name = task.name if task else "unknown"
    worker_tasks_in_progress.labels(task=name).dec()
    worker_tasks_total.labels(task=name, state=state or "unknown").inc()


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, **kwds):
    """Log task failures with their task id."""
    name = sender.name if sender else "unknown"
    logger.error(f"Task {name}[{task_id}] failed: {exception}")
