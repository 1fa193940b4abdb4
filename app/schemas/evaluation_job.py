from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import List, Optional, Dict
from datetime import datetime
from enum import Enum


class JobStatusEnum(str, Enum):
    """Evaluation job processing status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class StepEvaluation(BaseModel):
    """AI evaluation of a single rubric step. score 0 = step not performed/mentioned."""
    score: int = Field(..., ge=0, le=5)
    time: str = "N/A"
    comments: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def reject_non_numeric(cls, v):
        if isinstance(v, (bool, str)):
            raise ValueError("score must be an integer")
        return v


class EvaluationPayload(BaseModel):
    """
    Structured output expected from the evaluator.
    Step keys are checked against the rubric separately by the orchestrator.
    """
    steps: Dict[str, StepEvaluation]
    case_difficulty: int = Field(..., ge=0, le=3, description="0 = evaluation declined")
    additional_comments: str = ""

    @field_validator("case_difficulty", mode="before")
    @classmethod
    def reject_non_numeric(cls, v):
        if isinstance(v, (bool, str)):
            raise ValueError("case_difficulty must be an integer")
        return v


class SubmitRequest(BaseModel):
    """
    Schema for submitting a recording for evaluation.
    media_ref and procedure_id are checked by the service so that a missing
    value is a 400 like any other invalid submission.
    """
    media_ref: Optional[str] = Field(None, description="Locator returned by the upload endpoints")
    procedure_id: Optional[str] = None
    subject_name: Optional[str] = Field(None, max_length=255)
    additional_context: Optional[str] = None


class SubmitResponse(BaseModel):
    """Schema for job submission response"""
    job_id: str
    status: JobStatusEnum
    message: str


class JobStatusResponse(BaseModel):
    """Polling view of a job: status plus result or error once terminal"""
    job_id: str
    status: JobStatusEnum
    result: Optional[Dict] = None
    error: Optional[str] = None


class EvaluationJobResponse(BaseModel):
    """Full job record"""
    id: str
    status: JobStatusEnum
    source_ref: str
    procedure_id: str
    subject_name: Optional[str] = None
    additional_context: Optional[str] = None
    result: Optional[Dict] = None
    error_message: Optional[str] = None
    attempts: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True  # Allows conversion from SQLAlchemy models


class CompletedJobSummary(BaseModel):
    """Row of the completed-evaluations listing"""
    id: str
    procedure_id: str
    procedure_name: Optional[str] = None
    subject_name: Optional[str] = None
    is_finalized: bool = False
    created_at: datetime


class StepOverride(BaseModel):
    """Attending's corrections for one step; stored next to the AI values"""
    attending_score: Optional[int] = Field(None, ge=0, le=5)
    attending_time: Optional[str] = None
    attending_comments: Optional[str] = None


class OverrideRequest(BaseModel):
    """
    Attending overrides, keyed by rubric step key, plus overall fields.
    At least one field must be provided.
    """
    steps: Dict[str, StepOverride] = Field(default_factory=dict)
    attending_case_difficulty: Optional[int] = Field(None, ge=0, le=3)
    attending_additional_comments: Optional[str] = None

    @model_validator(mode="after")
    def check_not_empty(self):
        if not self.steps and self.attending_case_difficulty is None and self.attending_additional_comments is None:
            raise ValueError("At least one override field is required")
        return self


class NotifyRequest(BaseModel):
    recipient: EmailStr


class NotifyResponse(BaseModel):
    job_id: str
    recipient: EmailStr
    message: str


class ProcessTriggerResponse(BaseModel):
    """Result of an explicit processing/retry request"""
    job_id: str
    queued: bool
    message: str


class UploadResponse(BaseModel):
    media_ref: str
    filename: str
    content_type: Optional[str] = None


class PresignRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1)


class PresignResponse(BaseModel):
    upload_url: str
    media_ref: str
    expires_in: int


class RubricStepResponse(BaseModel):
    key: str
    name: str
    goal_time: Optional[str] = None


class RubricResponse(BaseModel):
    procedure_id: str
    name: str
    steps: List[RubricStepResponse]
    difficulty_levels: Dict[int, str]
