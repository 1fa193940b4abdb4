"""
FastAPI dependencies for collaborators and the processing-trigger secret.

Endpoints receive collaborators through these functions so tests can swap
them with app.dependency_overrides.
"""

import secrets
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings
from app.core.storage import StorageBackend, storage
from app.services.email_service import EmailService, get_email_service
from app.services.rubric_catalog import RubricCatalog, get_rubric_catalog

# HTTP Bearer token scheme (Authorization: Bearer <secret>)
security = HTTPBearer(auto_error=False)


def get_storage_backend() -> StorageBackend:
    return storage


def get_catalog() -> RubricCatalog:
    return get_rubric_catalog()


def get_email() -> EmailService:
    return get_email_service()


async def verify_trigger_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Guard for the processing trigger endpoint.

    Raises:
        HTTPException 503: If no trigger secret is configured
        HTTPException 401: If the bearer token is missing or wrong
    """
    if not settings.PROCESSING_TRIGGER_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processing trigger is not configured"
        )

    if credentials is None or not secrets.compare_digest(
        credentials.credentials, settings.PROCESSING_TRIGGER_SECRET
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
