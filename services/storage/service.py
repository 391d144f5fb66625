"""S3-compatible artifact storage for rendered invoices using MinIO.

Provides:
- Deterministic, overwrite-safe object keys per submission
- Retry on transient S3 errors
- Bucket auto-creation
- Presigned URLs for time-limited downloads
- Direct download as the fallback when signing fails
- Existence checks for recovering artifacts whose metadata was lost

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import mimetypes
import re
from collections.abc import Callable
from datetime import timedelta
from typing import Any, BinaryIO, TypeVar

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.invoices.errors import NotFound, StorageFailure, StorageUnavailable
from services.shared.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that will not go away on retry
PERMANENT_S3_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "AccessDenied", "InvalidAccessKeyId"})
MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchObject"})

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9-]")


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, S3Error) and error.code not in PERMANENT_S3_CODES


class StorageResult(BaseModel):
    """Result of a successful storage write.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    etag: str | None = None
    size: int | None = None


class PresignedUrlResult(BaseModel):
    """Result of presigned URL generation.

    Attributes:
        url: Presigned URL for object access
        expires_in_seconds: URL expiration time
    """

    url: str
    expires_in_seconds: int


class ArtifactStore:
    """Durable storage and link issuance for invoice PDFs.

    Writes to the same key replace the previous object, so a regenerated
    invoice lands where the old one was.
    """

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        """Initialize artifact store.

        Args:
            settings: Application settings with storage configuration
            client: Preconfigured MinIO client (created lazily when omitted)
        """
        self.settings = settings
        self._client = client
        self._bucket_exists_cache: set[str] = set()

    @staticmethod
    def invoice_object_name(contractor_id: str, submission_id: str, invoice_number: str) -> str:
        """Deterministic key for a submission's invoice.

        Args:
            contractor_id: Owning contractor
            submission_id: Submission the invoice belongs to
            invoice_number: Invoice number (sanitized into the file name)

        Returns:
            ``{contractor_id}/{submission_id}/invoice-{number}.pdf``
        """
        safe_number = _UNSAFE_KEY_CHARS.sub("-", invoice_number)
        return f"{contractor_id}/{submission_id}/invoice-{safe_number}.pdf"

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Returns:
            Configured Minio client instance

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def _with_retry(self, operation: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run a client call, retrying transient S3 errors."""
        retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.settings.storage_retry_attempts),
            wait=wait_exponential_jitter(initial=1, max=10),
            reraise=True,
        )
        return retrying(operation, *args, **kwargs)

    def is_available(self) -> bool:
        """Check if storage is configured.

        Returns:
            True if a client was injected or credentials are set
        """
        if self._client is not None:
            return True
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """Check if storage backend is reachable.

        Returns:
            True if MinIO server responds to list_buckets
        """
        if not self.is_available():
            return False

        try:
            client = self._get_client()
            client.list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        """Ensure bucket exists, create if missing.

        Args:
            bucket: Bucket name to check/create
        """
        if bucket in self._bucket_exists_cache:
            return

        client = self._get_client()
        if not self._with_retry(client.bucket_exists, bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")

        self._bucket_exists_cache.add(bucket)

    @staticmethod
    def _detect_content_type(filename: str) -> str:
        content_type, _ = mimetypes.guess_type(filename)
        return content_type or "application/octet-stream"

    def upload_bytes(
        self,
        data: bytes,
        object_name: str,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> StorageResult:
        """Upload bytes to storage, replacing any object under the same key.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage
            content_type: MIME type (auto-detected if not provided)
            bucket: Target bucket (defaults to settings.storage_bucket)

        Returns:
            StorageResult with upload details

        Raises:
            StorageFailure: If the upload failed after retries
        """
        bucket = bucket or self.settings.storage_bucket
        content_type = content_type or self._detect_content_type(object_name)

        try:
            client = self._get_client()
            self._ensure_bucket(bucket)

            data_length = len(data)

            def put() -> Any:
                # New stream for every attempt
                data_stream: BinaryIO = io.BytesIO(data)
                return client.put_object(
                    bucket_name=bucket,
                    object_name=object_name,
                    data=data_stream,
                    length=data_length,
                    content_type=content_type,
                )

            result = self._with_retry(put)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            raise StorageFailure(f"S3 error: {e.code} - {e.message}") from e
        except Exception as e:
            logger.error(f"Error uploading {object_name}: {e}")
            raise StorageFailure(f"Upload failed: {e}") from e

        logger.info(f"Uploaded {object_name} to {bucket} ({data_length} bytes)")

        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            etag=result.etag,
            size=data_length,
        )

    def get_presigned_url(
        self,
        object_name: str,
        expires_seconds: int | None = None,
        bucket: str | None = None,
    ) -> PresignedUrlResult:
        """Generate presigned URL for secure object download.

        Args:
            object_name: Object name in storage
            expires_seconds: URL lifetime (defaults to invoice_signed_url_ttl_seconds)
            bucket: Bucket name (defaults to settings.storage_bucket)

        Returns:
            PresignedUrlResult with URL and lifetime

        Raises:
            StorageUnavailable: If the URL could not be signed
        """
        bucket = bucket or self.settings.storage_bucket
        expires_seconds = expires_seconds or self.settings.invoice_signed_url_ttl_seconds

        try:
            client = self._get_client()
            url = self._with_retry(
                client.presigned_get_object,
                bucket_name=bucket,
                object_name=object_name,
                expires=timedelta(seconds=expires_seconds),
            )
        except S3Error as e:
            logger.error(f"S3 error generating presigned URL for {object_name}: {e}")
            raise StorageUnavailable(f"S3 error: {e.code} - {e.message}") from e
        except Exception as e:
            logger.error(f"Error generating presigned URL for {object_name}: {e}")
            raise StorageUnavailable(f"Signing failed: {e}") from e

        return PresignedUrlResult(url=url, expires_in_seconds=expires_seconds)

    def download(self, object_name: str, bucket: str | None = None) -> bytes:
        """Read an object's bytes.

        Args:
            object_name: Object name in storage
            bucket: Bucket name (defaults to settings.storage_bucket)

        Returns:
            Object content

        Raises:
            NotFound: If the object does not exist
            StorageFailure: For any other storage error
        """
        bucket = bucket or self.settings.storage_bucket

        try:
            client = self._get_client()
            response = self._with_retry(
                client.get_object, bucket_name=bucket, object_name=object_name
            )
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                raise NotFound(f"Stored invoice {object_name} not found") from e
            logger.error(f"S3 error downloading {object_name}: {e}")
            raise StorageFailure(f"S3 error: {e.code} - {e.message}") from e
        except Exception as e:
            logger.error(f"Error downloading {object_name}: {e}")
            raise StorageFailure(f"Download failed: {e}") from e

    def object_exists(self, object_name: str, bucket: str | None = None) -> bool:
        bucket = bucket or self.settings.storage_bucket

        try:
            client = self._get_client()
            client.stat_object(bucket_name=bucket, object_name=object_name)
            return True
        except S3Error:
            return False
        except Exception as e:
            logger.warning(f"Could not stat {object_name}: {e}")
            return False
