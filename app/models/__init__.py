"""
Database models package.
"""

from app.models.evaluation_job import EvaluationJob, JobStatus

__all__ = ["EvaluationJob", "JobStatus"]
