import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.deps import get_catalog, get_email, get_storage_backend, verify_trigger_secret
from app.core.storage import StorageBackend
from app.crud import evaluation_job as job_crud
from app.schemas.evaluation_job import (
    CompletedJobSummary,
    EvaluationJobResponse,
    JobStatusEnum,
    JobStatusResponse,
    NotifyRequest,
    NotifyResponse,
    OverrideRequest,
    ProcessTriggerResponse,
    SubmitRequest,
    SubmitResponse,
)
from app.services import evaluation_service
from app.services.email_service import EmailService
from app.services.rubric_catalog import RubricCatalog

router = APIRouter(prefix="/evaluations", tags=["Evaluations"])
logger = logging.getLogger(__name__)


@router.post("/", status_code=202, response_model=SubmitResponse)
def submit_evaluation(
    request: SubmitRequest,
    db: Session = Depends(get_db),
    catalog: RubricCatalog = Depends(get_catalog),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """
    Submit an uploaded recording for transcription and evaluation.

    The job is created with status=pending and processed asynchronously by
    a Celery worker:
    1. Job saved with status=pending
    2. Processing task queued to Redis (or picked up later by the sweep)
    3. Worker claims the job (processing), transcribes, evaluates
    4. Job ends complete (result) or failed (error)

    Poll GET /evaluations/{job_id}/status for the outcome.
    """
    job, queued = evaluation_service.submit(db, catalog, storage, request)

    message = "Evaluation job created and queued for processing."
    if not queued:
        message = "Evaluation job created; processing will start shortly."

    return SubmitResponse(job_id=job.id, status=JobStatusEnum.PENDING, message=message)


@router.get("/", response_model=list[CompletedJobSummary])
def list_completed_evaluations(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """
    List completed evaluations, newest first.
    """
    return evaluation_service.list_completed(db, skip=skip, limit=limit)


@router.get("/{job_id}", response_model=EvaluationJobResponse)
def get_evaluation(job_id: str, db: Session = Depends(get_db)):
    """
    Retrieve the full job record, including inputs and timestamps.
    """
    return job_crud.get(db, job_id)


@router.get("/{job_id}/status", response_model=JobStatusResponse)
def get_evaluation_status(job_id: str, db: Session = Depends(get_db)):
    """
    Poll a job.

    - pending: waiting for a worker
    - processing: transcription/evaluation in progress
    - complete: `result` holds the evaluation
    - failed: `error` describes what went wrong
    """
    return evaluation_service.get_status(db, job_id)


@router.put("/{job_id}/override", response_model=EvaluationJobResponse)
def override_evaluation(job_id: str, override: OverrideRequest, db: Session = Depends(get_db)):
    """
    Record attending overrides for steps and/or the overall assessment.

    Only complete, not yet finalized evaluations can be edited (409 otherwise).
    """
    return evaluation_service.apply_override(db, job_id, override)


@router.post("/{job_id}/finalize", response_model=EvaluationJobResponse)
def finalize_evaluation(job_id: str, db: Session = Depends(get_db)):
    """
    Freeze the evaluation against further edits.
    """
    return evaluation_service.finalize(db, job_id)


@router.post("/{job_id}/notify", response_model=NotifyResponse)
def notify_evaluation(
    job_id: str,
    request: NotifyRequest,
    db: Session = Depends(get_db),
    catalog: RubricCatalog = Depends(get_catalog),
    email_service: EmailService = Depends(get_email),
):
    """
    Email the finalized evaluation report (412 if not finalized).
    """
    evaluation_service.notify(db, catalog, email_service, job_id, request.recipient)
    return NotifyResponse(job_id=job_id, recipient=request.recipient, message="Evaluation report sent")


@router.post(
    "/{job_id}/process",
    status_code=202,
    response_model=ProcessTriggerResponse,
    dependencies=[Depends(verify_trigger_secret)],
)
def trigger_processing(
    job_id: str,
    retry: bool = False,
    db: Session = Depends(get_db)
):
    """
    Explicitly trigger processing of a job (Bearer PROCESSING_TRIGGER_SECRET).

    With retry=true a failed job is re-claimed and processed from scratch;
    retrying a job that has not failed returns 409.
    """
    queued, message = evaluation_service.request_processing(db, job_id, retry=retry)
    return ProcessTriggerResponse(job_id=job_id, queued=queued, message=message)


@router.delete("/{job_id}", status_code=204)
def delete_evaluation(job_id: str, db: Session = Depends(get_db)):
    """
    Delete an evaluation job by ID.
    """
    evaluation_service.delete(db, job_id)
    return None
