"""
Health check endpoints.

/health is for load balancers; /health/detailed also checks the database,
storage and reports job counts per status.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.deps import get_storage_backend
from app.core.storage import LocalStorage, S3Storage, StorageBackend
from app.crud import evaluation_job as job_crud

router = APIRouter(tags=["Health"])
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns 200 OK if the service is running.
    """
    return {"status": "healthy", "timestamp": _now()}


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
def detailed_health_check(
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_backend),
) -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Database connectivity (and job counts by status)
    - Storage availability (S3 bucket access or local upload directory)
    """
    health_status = {"status": "healthy", "timestamp": _now(), "checks": {}}

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {
            "status": "healthy",
            "jobs": job_crud.count_by_status(db),
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {"status": "unhealthy", "message": f"Database error: {e}"}

    try:
        if isinstance(storage, S3Storage):
            storage.s3_client.head_bucket(Bucket=storage.bucket_name)
            message = "S3 bucket accessible"
        elif isinstance(storage, LocalStorage):
            if not os.path.isdir(storage.base_dir):
                raise OSError(f"{storage.base_dir} is missing")
            message = "Local upload directory present"
        else:
            message = "Storage configured"
        health_status["checks"]["storage"] = {"status": "healthy", "message": message}
    except Exception as e:
        logger.error(f"Storage health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["storage"] = {"status": "unhealthy", "message": f"Storage error: {e}"}

    return health_status
