"""
Domain exceptions for the evaluation pipeline.

Synchronous API calls let these propagate to the exception handlers
registered in main.py, which map them onto HTTP status codes. Inside the
background pipeline they are caught by the orchestrator and recorded on the
job instead.
"""


class EvaluationServiceError(Exception):
    """Base class for all errors raised by this service"""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(EvaluationServiceError):
    """Malformed or missing input; the job is never created or changed"""

    status_code = 400


class NotFoundError(EvaluationServiceError):
    """Unknown job or procedure id"""

    status_code = 404


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ProcedureNotFoundError(NotFoundError):
    def __init__(self, procedure_id: str):
        super().__init__(f"Procedure '{procedure_id}' not found")
        self.procedure_id = procedure_id


class ConflictError(EvaluationServiceError):
    """Illegal state transition, or an edit against a frozen result"""

    status_code = 409


class PreconditionError(EvaluationServiceError):
    """Action attempted before its prerequisite state (e.g. notify before finalize)"""

    status_code = 412


class StorageError(EvaluationServiceError):
    """Object store could not accept, locate or presign a file"""

    status_code = 503


class DeliveryError(EvaluationServiceError):
    """Outbound email could not be delivered"""

    status_code = 502


class TranscriberError(EvaluationServiceError):
    """
    Vendor-neutral transcription failure.

    `kind` tags the failure so callers never need the vendor SDK's
    exception types.
    """

    kind = "transcription_error"
    status_code = 502


class TranscriptionError(TranscriberError):
    kind = "transcription_error"


class EmptyTranscriptError(TranscriberError):
    kind = "empty_result"

    def __init__(self, message: str = "empty transcription"):
        super().__init__(message)


class EvaluatorError(EvaluationServiceError):
    """Vendor-neutral evaluation failure"""

    kind = "evaluation_error"
    status_code = 502


class EvaluationError(EvaluatorError):
    kind = "evaluation_error"


class SchemaMismatchError(EvaluatorError):
    kind = "schema_mismatch"
