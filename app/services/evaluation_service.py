"""
Client-facing operations on evaluation jobs.

Everything here is synchronous and raises domain exceptions straight to the
caller. Processing itself happens in the Celery worker; submit and
request_processing only queue it.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from sqlalchemy.orm import Session

from app.core.celery_utils import queue_task_safely
from app.core.exceptions import ConflictError, PreconditionError, ValidationError
from app.core.storage import StorageBackend
from app.crud import evaluation_job as job_crud
from app.models.evaluation_job import EvaluationJob, JobStatus
from app.schemas.evaluation_job import OverrideRequest, SubmitRequest
from app.services.email_service import EmailService
from app.services.rubric_catalog import RubricCatalog
from app.tasks.evaluation_tasks import process_evaluation_job_task

logger = logging.getLogger(__name__)


def trigger_processing(job_id: str, allow_retry: bool = False) -> bool:
    """Queue the processing task; False if the broker could not be reached."""
    return queue_task_safely(process_evaluation_job_task, job_id, allow_retry=allow_retry)


def submit(
    db: Session,
    catalog: RubricCatalog,
    storage: StorageBackend,
    request: SubmitRequest
) -> Tuple[EvaluationJob, bool]:
    """
    Create a pending job and queue it for processing.

    Identical submissions create distinct jobs. If queueing fails the job
    stays pending and the periodic sweep picks it up.

    Returns:
        (job, queued)

    Raises:
        ValidationError: Missing or unresolvable media_ref, missing or unknown
            procedure_id;
            no job is created
    """
    if not request.media_ref or not request.media_ref.strip():
        raise ValidationError("media_ref is required")
    if not request.procedure_id or not request.procedure_id.strip():
        raise ValidationError("procedure_id is required")
    if not storage.is_resolvable(request.media_ref.strip()):
        raise ValidationError("media_ref does not point to an uploaded recording")
    if not catalog.has_procedure(request.procedure_id.strip()):
        raise ValidationError(f"Unknown procedure '{request.procedure_id}'")

    job = job_crud.create(db, request)
    queued = trigger_processing(job.id)
    logger.info(f"Created job {job.id} for procedure {job.procedure_id} | queued={queued}")
    return job, queued


def get_status(db: Session, job_id: str) -> Dict:
    """
    Polling view of a job. Read-only.

    Returns:
        {"job_id", "status", "result", "error"}; result is set only when
        complete, error only when failed
    """
    job = job_crud.get(db, job_id)
    return {
        "job_id": job.id,
        "status": job.status.value,
        "result": job.result if job.status == JobStatus.COMPLETE else None,
        "error": job.error_message if job.status == JobStatus.FAILED else None,
    }


def apply_override(db: Session, job_id: str, override: OverrideRequest) -> EvaluationJob:
    """
    Record attending overrides next to the AI values.

    Raises:
        ConflictError: Job not complete, or already finalized
        ValidationError: Override names a step that is not in the result
    """
    def mutate(result: Dict) -> Dict:
        if result.get("is_finalized"):
            raise ConflictError("Evaluation is finalized and can no longer be edited")

        steps = result.get("steps", {})
        unknown = sorted(set(override.steps) - set(steps))
        if unknown:
            raise ValidationError(f"Unknown step key(s): {', '.join(unknown)}")

        for key, fields in override.steps.items():
            steps[key].update(fields.model_dump(exclude_none=True))
        if override.attending_case_difficulty is not None:
            result["attending_case_difficulty"] = override.attending_case_difficulty
        if override.attending_additional_comments is not None:
            result["attending_additional_comments"] = override.attending_additional_comments
        return result

    job = job_crud.update_result(db, job_id, mutate)
    logger.info(f"Applied attending override to job {job_id} ({len(override.steps)} step(s))")
    return job


def finalize(db: Session, job_id: str) -> EvaluationJob:
    """
    Freeze a complete job's result.

    Raises:
        ConflictError: Job not complete, or already finalized
    """
    def mutate(result: Dict) -> Dict:
        if result.get("is_finalized"):
            raise ConflictError("Evaluation is already finalized")
        result["is_finalized"] = True
        result["finalized_at"] = datetime.now(timezone.utc).isoformat()
        return result

    job = job_crud.update_result(db, job_id, mutate)
    logger.info(f"Finalized job {job_id}")
    return job


def notify(
    db: Session,
    catalog: RubricCatalog,
    email_service: EmailService,
    job_id: str,
    recipient: str
) -> str:
    """
    Email the finalized report.

    Returns:
        Delivery message id

    Raises:
        PreconditionError: Job is not finalized
        DeliveryError: Email could not be sent
    """
    job = job_crud.get(db, job_id)
    if job.status != JobStatus.COMPLETE or not job.is_finalized:
        raise PreconditionError("Evaluation must be finalized before it can be emailed")

    rubric = catalog.get_rubric(job.procedure_id)
    return email_service.send_evaluation_report(recipient, job, rubric)


def list_completed(db: Session, skip: int = 0, limit: int = 100) -> List[Dict]:
    """Summaries of completed jobs, newest first."""
    summaries = []
    for job in job_crud.list_completed(db, skip=skip, limit=limit):
        result = job.result or {}
        summaries.append({
            "id": job.id,
            "procedure_id": job.procedure_id,
            "procedure_name": result.get("procedure_name"),
            "subject_name": job.subject_name,
            "is_finalized": bool(result.get("is_finalized")),
            "created_at": job.created_at,
        })
    return summaries


def delete(db: Session, job_id: str) -> None:
    job_crud.delete(db, job_id)
    logger.info(f"Deleted job {job_id}")


def request_processing(db: Session, job_id: str, retry: bool = False) -> Tuple[bool, str]:
    """
    Explicit processing trigger.

    Without `retry` only a pending job is queued; any other status is a
    no-op. With `retry` the job must be failed and is re-claimed by the
    worker.

    Returns:
        (queued, message)

    Raises:
        JobNotFoundError: Unknown job
        ConflictError: retry requested for a job that is not failed
    """
    job = job_crud.get(db, job_id)

    if retry:
        if job.status != JobStatus.FAILED:
            raise ConflictError(f"Only failed jobs can be retried; job is {job.status.value}")
    elif job.status != JobStatus.PENDING:
        return False, f"Job is already {job.status.value}; nothing to do"

    queued = trigger_processing(job.id, allow_retry=retry)
    if not queued:
        return False, "Could not reach the task queue; the job will be picked up by the sweep"
    return True, "Retry queued" if retry else "Processing queued"
