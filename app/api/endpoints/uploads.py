import logging
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.core.deps import get_storage_backend
from app.core.storage import StorageBackend, is_allowed_media, MEDIA_CONTENT_TYPES
from app.schemas.evaluation_job import PresignRequest, PresignResponse, UploadResponse

router = APIRouter(prefix="/uploads", tags=["Uploads"])
logger = logging.getLogger(__name__)


@router.post("/", status_code=201, response_model=UploadResponse)
def upload_recording(
    file: UploadFile = File(...),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """
    Upload a recording through the API.

    The file is streamed to storage; the returned `media_ref` is what
    POST /evaluations expects.
    """
    if not file.filename or not is_allowed_media(file.filename):
        allowed = ", ".join(sorted(MEDIA_CONTENT_TYPES))
        raise HTTPException(status_code=400, detail=f"Unsupported file type. Allowed: {allowed}")

    media_ref = storage.upload_file(file.file, file.filename)
    logger.info(f"Stored upload {file.filename} as {media_ref}")

    return UploadResponse(media_ref=media_ref, filename=file.filename, content_type=file.content_type)


@router.post("/presign", response_model=PresignResponse)
def presign_upload(
    request: PresignRequest,
    storage: StorageBackend = Depends(get_storage_backend),
):
    """
    Get a pre-signed URL for uploading a large recording directly to S3.

    PUT the file to `upload_url` with the same Content-Type, then submit
    `media_ref`. Returns 503 when storage is not S3.
    """
    if not is_allowed_media(request.filename):
        raise HTTPException(status_code=400, detail="Unsupported file type")

    return storage.presign_upload(request.filename, request.content_type)
