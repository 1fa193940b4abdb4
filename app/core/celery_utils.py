"""
Queueing Celery tasks from API handlers.

Submission must never fail just because the broker is briefly unreachable:
the job row is already committed and the sweep will pick it up. So queueing
reports success as a bool instead of raising.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Tuple
from celery import Task
from kombu import Connection
from kombu.exceptions import KombuError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Queueing runs off the request thread; uvicorn's event loop and Celery's
# connection pool do not mix well
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="celery_queue")

QUEUE_TIMEOUT_SECONDS = 5


def _queue_task_sync(task: Task, args: tuple, kwargs: dict) -> Tuple[bool, str, str]:
    """
    Send the task over a fresh Kombu connection.

    Returns:
        Tuple[bool, str, str]: (success, task_id, error_message)
    """
    try:
        with Connection(settings.REDIS_URL) as conn:
            result = task.apply_async(
                args=args,
                kwargs=kwargs,
                connection=conn,
                retry=True,
                retry_policy={
                    'max_retries': 3,
                    'interval_start': 0,
                    'interval_step': 0.2,
                    'interval_max': 0.2,
                }
            )
            return (True, result.id, "")
    except (KombuError, OSError) as e:
        return (False, "", str(e))


def queue_task_safely(task: Task, *args, **kwargs) -> bool:
    """
    Queue a Celery task, reporting failure instead of raising.

    Args:
        task: The Celery task to queue
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        bool: True if the broker accepted the task

    Example:
        queued = queue_task_safely(process_evaluation_job_task, job.id)
    """
    future = _executor.submit(_queue_task_sync, task, args, kwargs)
    try:
        success, task_id, error = future.result(timeout=QUEUE_TIMEOUT_SECONDS)
    except FutureTimeoutError:
        success, task_id, error = False, "", f"broker did not respond within {QUEUE_TIMEOUT_SECONDS}s"

    if success:
        logger.info(f"Task {task.name} queued successfully: {task_id}")
    else:
        logger.error(f"Failed to queue task {task.name}: {error}")
    return success
