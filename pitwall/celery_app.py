"""
Celery application setup for Pitwall.

Workers and the API share the broker/result backend configured in
pitwall.config. Analysis tasks live in pitwall.core.tasks.analysis.

Queue Architecture:
- analysis: Upload analyses dispatched right after an explicit enqueue
- maintenance: The periodic job sweep (non-blocking)
"""
import logging
import os

from celery import Celery
from celery.signals import worker_ready
from kombu import Queue

from pitwall.config import settings


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


app = Celery(
    "pitwall",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["pitwall.core.tasks.analysis"],
)

app.conf.task_queues = (
    Queue("analysis", routing_key="analysis"),
    Queue("maintenance", routing_key="maintenance"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "300")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "360")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue="analysis",
    task_routes={
        "pitwall.tasks.process_next_analysis_job": {"queue": "maintenance"},
        "pitwall.tasks.process_upload_analysis": {"queue": "analysis"},
    },
)

# ============================================================================
# Celery Beat Schedule
# ============================================================================
beat_schedule = {}

# The sweep is the retry mechanism: it picks up pending jobs, failed jobs
# below the attempt cap, and processing jobs whose worker died.
if settings.analysis_sweep_enabled:
    beat_schedule["process-next-analysis-job"] = {
        "task": "pitwall.tasks.process_next_analysis_job",
        "schedule": settings.analysis_sweep_interval,  # Every N seconds (default: 30)
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"


# ============================================================================
# WORKER STARTUP RECOVERY
# ============================================================================
_recovery_logger = logging.getLogger("pitwall.celery.recovery")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """
    Run one sweep shortly after a worker starts so jobs orphaned by a
    previous crash are picked up without waiting for beat.
    """
    if not _bool(os.getenv("CELERY_STARTUP_RECOVERY_ENABLED", "true"), True):
        _recovery_logger.info("Startup recovery disabled via CELERY_STARTUP_RECOVERY_ENABLED")
        return

    _recovery_logger.info("Worker ready - scheduling analysis sweep")

    # Import here to avoid circular imports
    from pitwall.core.tasks.analysis import process_next_analysis_job

    process_next_analysis_job.apply_async(countdown=10)

    _recovery_logger.info("Startup analysis sweep scheduled")
