"""
Object store gateway for uploaded recordings, backed by the local filesystem
(development) or AWS S3 (production).

The rest of the application only ever handles the string locator ("media
ref") returned by a backend: a local path, an s3:// URI, or an http(s) URL
that the transcription vendor can fetch directly.
"""

import logging
import os
import uuid
from typing import BinaryIO, Dict, Iterator, Optional
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from app.core.config import settings
from app.core.exceptions import StorageError

logger = logging.getLogger(__name__)

MEDIA_CONTENT_TYPES = {
    'mp3': 'audio/mpeg',
    'wav': 'audio/wav',
    'm4a': 'audio/mp4',
    'aac': 'audio/aac',
    'ogg': 'audio/ogg',
    'flac': 'audio/flac',
    'webm': 'video/webm',
    'mp4': 'video/mp4',
    'mov': 'video/quicktime',
    'mkv': 'video/x-matroska',
}

CHUNK_SIZE = 1024 * 1024


def is_remote_url(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


def get_content_type(filename: str) -> str:
    """Determine content type based on file extension"""
    extension = filename.lower().rsplit('.', 1)[-1]
    return MEDIA_CONTENT_TYPES.get(extension, 'application/octet-stream')


def is_allowed_media(filename: str) -> bool:
    return '.' in filename and filename.lower().rsplit('.', 1)[-1] in MEDIA_CONTENT_TYPES


def _safe_filename(filename: str) -> str:
    return os.path.basename(filename).replace(" ", "_") or "recording"


class StorageBackend:
    """Interface shared by the storage backends"""

    def upload_file(self, file: BinaryIO, filename: str) -> str:
        """Store file and return its media ref"""
        raise NotImplementedError

    def presign_upload(self, filename: str, content_type: str) -> Dict[str, object]:
        """Issue a direct-upload URL: {upload_url, media_ref, expires_in}"""
        raise StorageError("This storage backend does not support direct uploads")

    def file_exists(self, ref: str) -> bool:
        raise NotImplementedError

    def get_fetch_url(self, ref: str) -> Optional[str]:
        """URL a remote service can GET the media from, or None if the bytes must be streamed"""
        raise NotImplementedError

    def iter_chunks(self, ref: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        raise NotImplementedError

    def delete_file(self, ref: str) -> bool:
        raise NotImplementedError

    def is_resolvable(self, ref: str) -> bool:
        """True if `ref` points at media this deployment can hand to the transcriber"""
        if not ref or not ref.strip():
            return False
        if is_remote_url(ref):
            return True
        return self.file_exists(ref)


class LocalStorage(StorageBackend):
    """Local filesystem storage backend"""

    def __init__(self, base_dir: str = "uploads"):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def upload_file(self, file: BinaryIO, filename: str) -> str:
        """Stream file into the uploads directory in chunks"""
        file_path = os.path.join(self.base_dir, f"{uuid.uuid4()}_{_safe_filename(filename)}")

        try:
            with open(file_path, "wb") as buffer:
                while True:
                    chunk = file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    buffer.write(chunk)
        except OSError as e:
            logger.error(f"Error writing upload {file_path}: {e}")
            raise StorageError(f"Failed to store file: {e}")

        return file_path

    def _owns(self, ref: str) -> bool:
        base = os.path.abspath(self.base_dir)
        return os.path.commonpath([base, os.path.abspath(ref)]) == base

    def file_exists(self, ref: str) -> bool:
        return self._owns(ref) and os.path.isfile(ref)

    def get_fetch_url(self, ref: str) -> Optional[str]:
        if is_remote_url(ref):
            return ref
        return None

    def iter_chunks(self, ref: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        if not self.file_exists(ref):
            raise StorageError(f"Media not found: {ref}")
        with open(ref, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def delete_file(self, ref: str) -> bool:
        if not self.file_exists(ref):
            return False
        try:
            os.remove(ref)
        except OSError as e:
            logger.error(f"Error deleting file {ref}: {e}")
            return False
        return True


class S3Storage(StorageBackend):
    """AWS S3 storage backend"""

    def __init__(self, bucket_name: Optional[str] = None, s3_client=None):
        self.bucket_name = bucket_name or settings.S3_BUCKET_NAME

        if s3_client is not None:
            self.s3_client = s3_client
        elif settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                region_name=settings.AWS_REGION
            )
        else:
            # Use IAM roles or instance profile
            self.s3_client = boto3.client('s3', region_name=settings.AWS_REGION)

    def _new_key(self, filename: str) -> str:
        return f"recordings/{uuid.uuid4()}_{_safe_filename(filename)}"

    def upload_file(self, file: BinaryIO, filename: str) -> str:
        """Upload file to S3 (multipart for large files) and return its s3:// URI"""
        s3_key = self._new_key(filename)

        try:
            self.s3_client.upload_fileobj(
                file,
                self.bucket_name,
                s3_key,
                ExtraArgs={
                    'ContentType': get_content_type(filename),
                    'ServerSideEncryption': 'AES256'
                }
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error uploading to S3: {e}")
            raise StorageError(f"Failed to upload file to S3: {e}")

        return f"s3://{self.bucket_name}/{s3_key}"

    def presign_upload(self, filename: str, content_type: str) -> Dict[str, object]:
        s3_key = self._new_key(filename)
        expires_in = settings.PRESIGNED_URL_EXPIRY_SECONDS

        try:
            upload_url = self.s3_client.generate_presigned_url(
                'put_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key, 'ContentType': content_type},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error presigning S3 upload: {e}")
            raise StorageError(f"Failed to create upload URL: {e}")

        return {
            "upload_url": upload_url,
            "media_ref": f"s3://{self.bucket_name}/{s3_key}",
            "expires_in": expires_in,
        }

    def file_exists(self, ref: str) -> bool:
        try:
            s3_key = self._parse_s3_uri(ref)
            self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
            return True
        except (ValueError, ClientError):
            return False

    def get_fetch_url(self, ref: str) -> Optional[str]:
        if is_remote_url(ref):
            return ref
        s3_key = self._parse_s3_uri(ref)
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=settings.PRESIGNED_URL_EXPIRY_SECONDS,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to create download URL: {e}")

    def iter_chunks(self, ref: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        s3_key = self._parse_s3_uri(ref)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to read media from S3: {e}")
        yield from response['Body'].iter_chunks(chunk_size)

    def delete_file(self, ref: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._parse_s3_uri(ref))
            return True
        except (ValueError, ClientError) as e:
            logger.error(f"Error deleting from S3: {e}")
            return False

    def _parse_s3_uri(self, s3_uri: str) -> str:
        """Parse S3 URI and extract key

        Supports formats:
        - s3://bucket-name/key/path (bucket must be ours)
        - recordings/uuid_name.mp4 (assumes default bucket)
        """
        if s3_uri.startswith("s3://"):
            parts = s3_uri[len("s3://"):].split("/", 1)
            if len(parts) == 2 and parts[0] == self.bucket_name and parts[1]:
                return parts[1]
            raise ValueError(f"Invalid S3 URI for bucket {self.bucket_name}: {s3_uri}")
        return s3_uri


def get_storage() -> StorageBackend:
    """Get storage backend based on USE_S3 setting"""
    if settings.USE_S3:
        if not settings.S3_BUCKET_NAME:
            raise ValueError("S3_BUCKET_NAME must be set when USE_S3=True")
        return S3Storage()
    return LocalStorage(settings.LOCAL_STORAGE_DIR)


# Singleton instance
storage = get_storage()
