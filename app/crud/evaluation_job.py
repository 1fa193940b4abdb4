"""
CRUD operations for the EvaluationJob model.

This module is the Job Store: the single place that reads and writes job
state. Status changes are conditional UPDATEs (`... WHERE status IN (...)`)
so that concurrent writers for the same job id are serialized by the
database; the status, result, error and updated_at always change together
in one statement.
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, JobNotFoundError, ValidationError
from app.models.evaluation_job import EvaluationJob, JobStatus, utcnow
from app.schemas.evaluation_job import SubmitRequest

# Forward-only state machine. failed -> processing is not listed here: it is
# only reachable through claim(..., allow_retry=True).
LEGAL_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def legal_sources(target: JobStatus) -> List[JobStatus]:
    """Statuses from which `target` may be entered."""
    return [source for source, targets in LEGAL_TRANSITIONS.items() if target in targets]


def create(db: Session, job_in: SubmitRequest) -> EvaluationJob:
    """
    Create a new pending job.

    Args:
        db: Database session
        job_in: Submission data (media_ref, procedure_id, optional metadata)

    Returns:
        Created EvaluationJob with its generated id

    Raises:
        ValidationError: If media_ref or procedure_id is missing or blank
    """
    if not job_in.media_ref or not job_in.media_ref.strip():
        raise ValidationError("media_ref is required")
    if not job_in.procedure_id or not job_in.procedure_id.strip():
        raise ValidationError("procedure_id is required")

    db_job = EvaluationJob(
        source_ref=job_in.media_ref.strip(),
        procedure_id=job_in.procedure_id.strip(),
        subject_name=job_in.subject_name,
        additional_context=job_in.additional_context,
        status=JobStatus.PENDING,
    )

    db.add(db_job)
    db.commit()
    db.refresh(db_job)

    return db_job


def get_by_id(db: Session, job_id: str) -> Optional[EvaluationJob]:
    """
    Retrieve a job by its ID.

    Returns:
        EvaluationJob if found, None otherwise
    """
    return db.query(EvaluationJob).filter(EvaluationJob.id == job_id).first()


def get(db: Session, job_id: str) -> EvaluationJob:
    """
    Retrieve a job by its ID.

    Raises:
        JobNotFoundError: If no job has this id
    """
    job = get_by_id(db, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def _check_terminal_payload(status: JobStatus, result: Optional[dict], error: Optional[str]) -> None:
    if status == JobStatus.COMPLETE:
        if result is None or error is not None:
            raise ValidationError("A complete job needs a result and no error")
    elif status == JobStatus.FAILED:
        if result is not None or not error or not error.strip():
            raise ValidationError("A failed job needs a non-empty error and no result")
    elif result is not None or error is not None:
        raise ValidationError(f"A {status.value} job cannot carry a result or error")


def update_status(
    db: Session,
    job_id: str,
    status: JobStatus,
    result: Optional[dict] = None,
    error: Optional[str] = None,
    attempt: Optional[int] = None
) -> EvaluationJob:
    """
    Move a job to `status`, writing result/error in the same statement.

    Args:
        db: Database session
        job_id: Job ID to update
        status: Target status
        result: Evaluation payload (required for COMPLETE)
        error: Failure description (required for FAILED)
        attempt: If given, only write while the job is still on this
            claim attempt; a newer claim makes the write a conflict

    Returns:
        The updated EvaluationJob

    Raises:
        JobNotFoundError: If the id is unknown
        ConflictError: If the job's current status cannot move to `status`,
            or `attempt` no longer owns the job
        ValidationError: If result/error do not match the target status
    """
    _check_terminal_payload(status, result, error)

    sources = legal_sources(status)
    updated = 0
    if sources:
        query = db.query(EvaluationJob).filter(EvaluationJob.id == job_id, EvaluationJob.status.in_(sources))
        if attempt is not None:
            query = query.filter(EvaluationJob.attempts == attempt)
        updated = (
            query
            .update(
                {
                    EvaluationJob.status: status,
                    EvaluationJob.result: result,
                    EvaluationJob.error_message: error,
                    EvaluationJob.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
    db.commit()

    job = get(db, job_id)
    if not updated:
        if attempt is not None and job.attempts != attempt:
            raise ConflictError(f"Attempt {attempt} of job {job_id} was superseded by attempt {job.attempts}")
        raise ConflictError(f"Illegal transition {job.status.value} -> {status.value} for job {job_id}")
    return job


def claim(db: Session, job_id: str, allow_retry: bool = False) -> Optional[int]:
    """
    Atomically move a job into PROCESSING.

    Only one of any number of concurrent callers can win the claim. With
    `allow_retry`, a FAILED job may be claimed again; its previous error is
    cleared.

    Args:
        db: Database session
        job_id: Job to claim
        allow_retry: Also accept FAILED as the starting status

    Returns:
        The new attempt number if this caller now owns the job, None if it
        was not claimable. Terminal writes for this run pass it back to
        update_status(attempt=...).

    Raises:
        JobNotFoundError: If the id is unknown
    """
    sources = [JobStatus.PENDING]
    if allow_retry:
        sources.append(JobStatus.FAILED)

    updated = (
        db.query(EvaluationJob)
        .filter(EvaluationJob.id == job_id, EvaluationJob.status.in_(sources))
        .update(
            {
                EvaluationJob.status: JobStatus.PROCESSING,
                EvaluationJob.result: None,
                EvaluationJob.error_message: None,
                EvaluationJob.attempts: EvaluationJob.attempts + 1,
                EvaluationJob.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )

    attempt = None
    if updated:
        # Read inside the claiming transaction, before any other claim can run
        attempt = db.query(EvaluationJob.attempts).filter(EvaluationJob.id == job_id).scalar()
    db.commit()

    if attempt is not None:
        return attempt
    if get_by_id(db, job_id) is None:
        raise JobNotFoundError(job_id)
    return None


def update_result(db: Session, job_id: str, mutate: Callable[[dict], dict]) -> EvaluationJob:
    """
    Apply a human edit to a complete job's result under a row lock.

    `mutate` receives a deep copy of the current result and returns the new
    one; it may raise to abort the edit, in which case nothing is written.

    Raises:
        JobNotFoundError: If the id is unknown
        ConflictError: If the job is not complete
    """
    job = (
        db.query(EvaluationJob)
        .filter(EvaluationJob.id == job_id)
        .with_for_update()
        .first()
    )
    try:
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.COMPLETE:
            raise ConflictError(f"Job {job_id} is {job.status.value}; only complete jobs can be edited")

        job.result = mutate(copy.deepcopy(job.result))
        job.updated_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(job)
    return job


def list_completed(db: Session, skip: int = 0, limit: int = 100) -> List[EvaluationJob]:
    """
    Completed jobs, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
    """
    return (
        db.query(EvaluationJob)
        .filter(EvaluationJob.status == JobStatus.COMPLETE)
        .order_by(EvaluationJob.created_at.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def list_pending(db: Session, older_than_seconds: int = 0, limit: int = 50) -> List[EvaluationJob]:
    """
    Pending jobs, oldest first, for the sweep.

    Args:
        older_than_seconds: Skip jobs created more recently than this
        limit: Maximum number of jobs to return
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
    return (
        db.query(EvaluationJob)
        .filter(EvaluationJob.status == JobStatus.PENDING, EvaluationJob.created_at <= cutoff)
        .order_by(EvaluationJob.created_at.asc())
        .limit(limit)
        .all()
    )


def get_stale_processing(db: Session, minutes: int = 30) -> List[EvaluationJob]:
    """
    Find jobs stuck in PROCESSING for longer than `minutes`.

    Returns:
        List of stale jobs
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    return (
        db.query(EvaluationJob)
        .filter(EvaluationJob.status == JobStatus.PROCESSING, EvaluationJob.updated_at < cutoff)
        .all()
    )


def delete(db: Session, job_id: str) -> None:
    """
    Delete a job by ID.

    Raises:
        JobNotFoundError: If the job does not exist (including a repeat delete)
    """
    job = get(db, job_id)
    db.delete(job)
    db.commit()


def count_by_status(db: Session, statuses: Iterable[JobStatus] = tuple(JobStatus)) -> Dict[str, int]:
    """
    Count jobs per status.

    Returns:
        Mapping of status value to count, zero-filled
    """
    counts = {status.value: 0 for status in statuses}
    rows = (
        db.query(EvaluationJob.status, func.count(EvaluationJob.id))
        .group_by(EvaluationJob.status)
        .all()
    )
    for status, count in rows:
        if status.value in counts:
            counts[status.value] = count
    return counts
