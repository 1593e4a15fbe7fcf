"""
MinIO client for object storage operations.
Stores chat attachments and streams them back. Calls are guarded by a
circuit breaker; a missing object is reported as None, not as a failure.
"""
import logging
from typing import Optional
from minio import Minio
from minio.error import S3Error
import pybreaker
from core.config import settings

logger = logging.getLogger(__name__)

MISSING_OBJECT_CODES = {"NoSuchKey", "NoSuchObject", "NoSuchBucket"}

# Circuit breaker for MinIO
minio_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=5,
    reset_timeout=30,
    name="minio_client"
)


class MinIOClient:
    """Client for MinIO object storage operations."""

    def __init__(self, bucket: Optional[str] = None):
        """Initialize MinIO client and make sure the upload bucket exists."""
        self.bucket = bucket or settings.minio_bucket
        try:
            self.client = Minio(
                settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                secure=settings.minio_secure
            )

            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created MinIO bucket: {self.bucket}")
            else:
                logger.info(f"MinIO bucket exists: {self.bucket}")

        except S3Error as e:
            logger.error(f"Failed to initialize MinIO client: {e}")
            raise

    @minio_circuit_breaker
    def put_object(self, object_name: str, data, length: int, content_type: str = "application/octet-stream") -> bool:
        """
        Upload an object to MinIO.

        Args:
            object_name: Name of the object in the bucket
            data: File-like object to upload
            length: Size of the data in bytes
            content_type: MIME type of the object

        Returns:
            True if upload successful
        """
        self.client.put_object(
            self.bucket,
            object_name,
            data,
            length,
            content_type=content_type
        )
        logger.info(f"Uploaded object: {object_name} ({length} bytes)")
        return True

    @minio_circuit_breaker
    def stat_object(self, object_name: str) -> Optional[dict]:
        """
        Get metadata about an object.

        Returns:
            Dictionary with size, etag, content_type and last_modified, or None if not found
        """
        try:
            stat = self.client.stat_object(self.bucket, object_name)
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                logger.warning(f"Object not found: {object_name}")
                return None
            raise
        return {
            "size": stat.size,
            "etag": stat.etag,
            "content_type": stat.content_type,
            "last_modified": stat.last_modified
        }

    @minio_circuit_breaker
    def get_object(self, object_name: str):
        """
        Open an object for streaming.

        The caller must ``close()`` and ``release_conn()`` the returned
        response once the body has been consumed.

        Returns:
            urllib3 response, or None if the object does not exist
        """
        try:
            return self.client.get_object(self.bucket, object_name)
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                return None
            raise

    def ping(self) -> bool:
        """Readiness probe helper; never raises."""
        try:
            return self.client.bucket_exists(self.bucket)
        except Exception as e:
            logger.warning(f"MinIO ping failed: {e}")
            return False


# Global MinIO client instance (initialized on first use)
_minio_client: Optional[MinIOClient] = None


def get_minio_client() -> MinIOClient:
    """
    Get or create global MinIO client instance.

    Returns:
        MinIOClient instance
    """
    global _minio_client
    if _minio_client is None:
        _minio_client = MinIOClient()
    return _minio_client
