import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, JSON
from sqlalchemy.dialects.postgresql import JSONB
from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    """
    Evaluation job lifecycle.

    - PENDING: Job created, waiting for a worker to claim it
    - PROCESSING: Claimed; transcription and evaluation in progress
    - COMPLETE: Evaluation stored in `result`
    - FAILED: Pipeline stopped; reason stored in `error_message`
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


class EvaluationJob(Base):
    """
    One submitted recording moving through transcription and evaluation.

    Inputs (source_ref, procedure_id, subject_name, additional_context) are
    fixed at creation. `result` is written once by the orchestrator and is
    afterwards only amended with attending overrides and the finalize flag.
    """
    __tablename__ = "evaluation_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    status = Column(Enum(JobStatus, name="evaluation_job_status"), default=JobStatus.PENDING, nullable=False, index=True)

    source_ref = Column(String(1024), nullable=False)
    procedure_id = Column(String(100), nullable=False, index=True)
    subject_name = Column(String(255), nullable=True)
    additional_context = Column(Text, nullable=True)

    # EvaluationResult payload; JSONB on PostgreSQL, plain JSON elsewhere
    result = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)
    error_message = Column(Text, nullable=True)

    # Number of times a worker has claimed this job
    attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def is_finalized(self) -> bool:
        return bool(self.result and self.result.get("is_finalized"))

    def __repr__(self):
        return f"<EvaluationJob(id={self.id}, procedure='{self.procedure_id}', status={self.status.value})>"
