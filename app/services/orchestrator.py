"""
Job orchestrator: drives one evaluation job from PENDING to a terminal state.

    pending -> processing -> complete | failed

The claim is a single conditional UPDATE committed before any slow work, so
no row lock is held while the transcriber and evaluator run. Every pipeline
failure ends as a FAILED job with a non-empty error; nothing is raised to
the caller and nothing is retried here. A retry is a fresh call with
allow_retry=True.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConflictError,
    EmptyTranscriptError,
    EvaluatorError,
    JobNotFoundError,
    ProcedureNotFoundError,
    TranscriberError,
)
from app.crud import evaluation_job as job_crud
from app.models.evaluation_job import EvaluationJob, JobStatus
from app.schemas.evaluation_job import EvaluationPayload
from app.services.evaluator import Evaluator
from app.services.rubric_catalog import Rubric, RubricCatalog
from app.services.transcriber import Transcriber

logger = logging.getLogger(__name__)

UNKNOWN_PROCEDURE = "unknown procedure"
EMPTY_TRANSCRIPTION = "empty transcription"
INVALID_PAYLOAD = "invalid evaluation payload"

class PipelineFailure(Exception):
    """A pipeline step failed; `message` is what gets stored on the job."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPayloadError(Exception):
    pass


def validate_payload(payload: Dict, rubric: Rubric) -> Dict:
    """
    Check an evaluator payload against the rubric and normalize it.

    Every rubric step must be present with an integer score in [0, 5], and
    case_difficulty must be an integer in [0, 3]. Steps the rubric does not
    know are dropped.

    Returns:
        {"steps": {...}, "case_difficulty": int, "additional_comments": str}
        with steps in rubric order

    Raises:
        InvalidPayloadError: With a description of the first problem found
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("steps"), dict):
        raise InvalidPayloadError("payload has no 'steps' object")

    steps = payload["steps"]
    missing = [key for key in rubric.step_keys if key not in steps]
    if missing:
        raise InvalidPayloadError(f"missing steps: {', '.join(missing)}")

    unknown = sorted(set(steps) - set(rubric.step_keys))
    if unknown:
        logger.warning(f"Dropping steps not in rubric {rubric.procedure_id}: {unknown}")

    try:
        parsed = EvaluationPayload.model_validate({
            "steps": {key: steps[key] for key in rubric.step_keys},
            "case_difficulty": payload.get("case_difficulty"),
            "additional_comments": payload.get("additional_comments") or "",
        })
    except PydanticValidationError as e:
        raise InvalidPayloadError(str(e))

    return {
        "steps": {key: parsed.steps[key].model_dump() for key in rubric.step_keys},
        "case_difficulty": parsed.case_difficulty,
        "additional_comments": parsed.additional_comments,
    }


class JobOrchestrator:
    """
    Runs the transcribe -> evaluate -> validate pipeline for a single job.

    Collaborators are injected so the Celery task, the sweep and the tests
    all drive the same state machine.
    """

    def __init__(
        self,
        db: Session,
        catalog: RubricCatalog,
        transcriber: Transcriber,
        evaluator: Evaluator,
        transcription_timeout: Optional[float] = None,
        evaluation_timeout: Optional[float] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.transcriber = transcriber
        self.evaluator = evaluator
        self.transcription_timeout = transcription_timeout or settings.TRANSCRIPTION_TIMEOUT_SECONDS
        self.evaluation_timeout = evaluation_timeout or settings.EVALUATION_TIMEOUT_SECONDS

    def process_job(self, job_id: str, allow_retry: bool = False) -> Optional[JobStatus]:
        """
        Claim and process a job.

        Args:
            job_id: Job to process
            allow_retry: Also claim the job if it is FAILED

        Returns:
            The job's status after this call, or None if the job does not exist.
            A lost claim leaves the job untouched and returns its current status.
        """
        try:
            attempt = job_crud.claim(self.db, job_id, allow_retry=allow_retry)
        except JobNotFoundError:
            logger.warning(f"[Job {job_id}] Not found, nothing to process")
            return None

        if attempt is None:
            job = job_crud.get_by_id(self.db, job_id)
            current = job.status if job else None
            logger.info(f"[Job {job_id}] Not claimable (status={current.value if current else 'deleted'}), skipping")
            return current

        job = job_crud.get(self.db, job_id)
        logger.info(f"[Job {job_id}] Claimed (attempt {attempt}), procedure={job.procedure_id}")

        try:
            result = self._run_pipeline(job)
        except PipelineFailure as e:
            logger.warning(f"[Job {job_id}] Failed: {e.message}")
            return self._finish(job_id, attempt, JobStatus.FAILED, error=e.message)
        except Exception as e:
            logger.error(f"[Job {job_id}] Unexpected error: {e}", exc_info=True)
            return self._finish(job_id, attempt, JobStatus.FAILED, error=f"Unexpected error: {e}")

        logger.info(f"[Job {job_id}] Completed")
        return self._finish(job_id, attempt, JobStatus.COMPLETE, result=result)

    def _run_pipeline(self, job: EvaluationJob) -> Dict:
        try:
            rubric = self.catalog.get_rubric(job.procedure_id)
        except ProcedureNotFoundError:
            raise PipelineFailure(UNKNOWN_PROCEDURE)

        try:
            transcript = self._call_with_timeout(
                self.transcriber.transcribe, self.transcription_timeout, "transcription", job.source_ref
            )
        except EmptyTranscriptError:
            raise PipelineFailure(EMPTY_TRANSCRIPTION)
        except TranscriberError as e:
            raise PipelineFailure(e.message or "transcription failed")

        if not transcript or not transcript.strip():
            raise PipelineFailure(EMPTY_TRANSCRIPTION)
        logger.info(f"[Job {job.id}] Transcription complete ({len(transcript)} chars)")

        try:
            payload = self._call_with_timeout(
                self.evaluator.evaluate, self.evaluation_timeout, "evaluation",
                transcript, rubric, job.additional_context
            )
        except EvaluatorError as e:
            raise PipelineFailure(e.message or "evaluation failed")

        try:
            evaluation = validate_payload(payload, rubric)
        except InvalidPayloadError as e:
            logger.warning(f"[Job {job.id}] Rejected evaluator output: {e}")
            raise PipelineFailure(INVALID_PAYLOAD)

        return {
            **evaluation,
            "transcription": transcript,
            "procedure_id": job.procedure_id,
            "procedure_name": rubric.name,
            "subject_name": job.subject_name,
            "additional_context": job.additional_context,
            "is_finalized": False,
        }

    def _call_with_timeout(self, fn: Callable, timeout: float, label: str, *args):
        """
        Run one vendor call on its own thread and stop waiting after `timeout`.

        A call that overruns keeps its thread until the vendor client gives
        up; it never holds a slot another job needs.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"pipeline_{label}")
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise PipelineFailure(f"{label} timed out after {timeout:g} seconds")
        finally:
            executor.shutdown(wait=False)

    def _finish(
        self,
        job_id: str,
        attempt: int,
        status: JobStatus,
        result: Optional[Dict] = None,
        error: Optional[str] = None
    ) -> Optional[JobStatus]:
        try:
            job = job_crud.update_status(self.db, job_id, status, result=result, error=error, attempt=attempt)
        except JobNotFoundError:
            logger.warning(f"[Job {job_id}] Deleted while processing; dropping {status.value} result")
            return None
        except ConflictError as e:
            logger.warning(f"[Job {job_id}] Could not record {status.value}: {e}")
            current = job_crud.get_by_id(self.db, job_id)
            return current.status if current else None
        return job.status


def fail_stale_jobs(db: Session, minutes: int) -> int:
    """
    Mark jobs stuck in PROCESSING for more than `minutes` as FAILED.

    A worker that dies mid-job never writes a terminal status; this is the
    only path that recovers such jobs. A job that finishes concurrently
    wins and is left alone.

    Returns:
        Number of jobs marked failed
    """
    failed = 0
    for job in job_crud.get_stale_processing(db, minutes=minutes):
        try:
            job_crud.update_status(
                db, job.id, JobStatus.FAILED,
                error=f"processing timed out: no result after {minutes} minutes",
                attempt=job.attempts,
            )
            failed += 1
            logger.warning(f"[Job {job.id}] Marked failed after {minutes} minutes in processing")
        except (ConflictError, JobNotFoundError) as e:
            logger.info(f"[Job {job.id}] Stale check skipped: {e}")
    return failed
