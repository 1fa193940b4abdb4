"""
Celery tasks for the evaluation pipeline.

Each task opens its own database session. The orchestrator's claim makes
both tasks safe to run any number of times for the same job.
"""

import logging
from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.storage import storage
from app.crud import evaluation_job as job_crud
from app.services.evaluator import OpenAIEvaluator
from app.services.orchestrator import JobOrchestrator, fail_stale_jobs
from app.services.rubric_catalog import get_rubric_catalog
from app.services.transcriber import DeepgramTranscriber

logger = logging.getLogger(__name__)


def build_orchestrator(db) -> JobOrchestrator:
    """Orchestrator wired to the production collaborators."""
    return JobOrchestrator(
        db,
        catalog=get_rubric_catalog(),
        transcriber=DeepgramTranscriber(storage),
        evaluator=OpenAIEvaluator(),
    )


@celery_app.task(name="app.tasks.evaluation_tasks.process_evaluation_job_task", bind=True)
def process_evaluation_job_task(self, job_id: str, allow_retry: bool = False):
    """
    Celery task to run one job through transcription and evaluation.

    Args:
        self: Celery task instance (when bind=True)
        job_id: The job ID to process
        allow_retry: Re-claim the job if it previously failed

    Returns:
        dict: job id and the status it ended in (None if the job is gone)
    """
    logger.info(f"[Task {self.request.id}] Processing job {job_id} (retry={allow_retry})")

    db = SessionLocal()
    try:
        status = build_orchestrator(db).process_job(job_id, allow_retry=allow_retry)
        logger.info(f"[Task {self.request.id}] Job {job_id} is {status.value if status else 'missing'}")
        return {"job_id": job_id, "status": status.value if status else None}
    finally:
        db.close()


@celery_app.task(name="app.tasks.evaluation_tasks.sweep_evaluation_jobs_task", bind=True)
def sweep_evaluation_jobs_task(self):
    """
    Periodic sweep (Celery beat).

    Fails jobs stuck in processing, then re-queues pending jobs old enough
    that their original trigger was probably lost.
    """
    db = SessionLocal()
    try:
        failed = fail_stale_jobs(db, settings.STALE_PROCESSING_MINUTES)
        pending = job_crud.list_pending(db, older_than_seconds=settings.SWEEP_PENDING_GRACE_SECONDS)
        for job in pending:
            process_evaluation_job_task.delay(job.id)

        if failed or pending:
            logger.info(f"[Task {self.request.id}] Sweep re-queued {len(pending)} pending job(s), failed {failed} stale job(s)")
        return {"requeued": len(pending), "failed_stale": failed}
    finally:
        db.close()
