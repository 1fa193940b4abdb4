"""
Celery tasks package.

- evaluation_tasks: per-job processing and the periodic pending/stale sweep
"""

from app.tasks import evaluation_tasks

__all__ = ["evaluation_tasks"]
