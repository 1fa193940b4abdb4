"""
Celery application configuration.

Redis is both broker and result backend. Besides the per-job processing task,
beat runs the sweep that re-queues pending jobs whose trigger was lost and
fails jobs stuck in processing.
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from app.core.config import settings
from app.core.logging_config import setup_logging

celery_app = Celery(
    "surgical_evaluation_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task behavior: the hard limit must exceed both per-call pipeline timeouts
    task_track_started=True,
    task_time_limit=settings.TRANSCRIPTION_TIMEOUT_SECONDS + settings.EVALUATION_TIMEOUT_SECONDS + 120,
    task_soft_time_limit=settings.TRANSCRIPTION_TIMEOUT_SECONDS + settings.EVALUATION_TIMEOUT_SECONDS + 60,

    # Result backend
    result_expires=3600,

    # Worker behavior
    worker_prefetch_multiplier=1,  # Long-running jobs; fetch one at a time
    worker_max_tasks_per_child=50,

    beat_schedule={
        "sweep-evaluation-jobs": {
            "task": "app.tasks.evaluation_tasks.sweep_evaluation_jobs_task",
            "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
        },
    },
)

celery_app.autodiscover_tasks(['app'])


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application's log format in worker processes"""
    setup_logging()
