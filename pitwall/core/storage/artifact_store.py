"""
Artifact store for uploaded telemetry files.

Objects live in a single MinIO (S3-compatible) bucket and are addressed by an
opaque storage path of the form ``{user_id}/{upload_id}/{filename}``. The
orchestrator only needs ``download``; the upload router uses ``upload``.
"""

import asyncio
import logging
from io import BytesIO
from typing import Optional, Protocol

from minio import Minio
from minio.error import S3Error

from pitwall.config import settings

logger = logging.getLogger("pitwall.storage")


class ArtifactStoreError(Exception):
    """Storage backend failure."""


class ArtifactNotFoundError(ArtifactStoreError):
    """No object exists at the requested storage path."""


class ArtifactStore(Protocol):
    async def upload(self, storage_path: str, data: bytes, content_type: str = ...) -> str:
        ...

    async def download(self, storage_path: str) -> bytes:
        ...

    async def check_health(self) -> bool:
        ...


def build_storage_path(user_id: str, upload_id: str, filename: str) -> str:
    safe_name = filename.replace("/", "_").replace("\\", "_") or "telemetry.csv"
    return f"{user_id}/{upload_id}/{safe_name}"


class MinIOArtifactStore:
    """
    MinIO-backed artifact store.

    The MinIO SDK is synchronous; calls run in a worker thread.

    Attributes:
        bucket: Bucket holding telemetry uploads
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        secure: Optional[bool] = None,
        bucket: Optional[str] = None,
    ):
        self.endpoint = endpoint or settings.minio_endpoint
        self.access_key = access_key or settings.minio_access_key
        self.secret_key = secret_key or settings.minio_secret_key
        self.secure = settings.minio_secure if secure is None else secure
        self.bucket = bucket or settings.minio_bucket_telemetry
        self._client: Optional[Minio] = None
        self._bucket_checked = False

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(f"MinIO client initialized (endpoint={self.endpoint}, secure={self.secure})")
        return self._client

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        self._bucket_checked = True

    def _put(self, storage_path: str, data: bytes, content_type: str) -> str:
        self._ensure_bucket()
        result = self.client.put_object(
            bucket_name=self.bucket,
            object_name=storage_path,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        logger.info(f"Uploaded object {self.bucket}/{storage_path} ({len(data)} bytes)")
        return result.etag

    def _get(self, storage_path: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(self.bucket, storage_path)
            return response.read()
        finally:
            if response:
                response.close()
                response.release_conn()

    async def upload(self, storage_path: str, data: bytes, content_type: str = "text/csv") -> str:
        """
        Store an artifact.

        Returns:
            Object ETag

        Raises:
            ArtifactStoreError: If the backend rejects the write
        """
        try:
            return await asyncio.to_thread(self._put, storage_path, data, content_type)
        except S3Error as e:
            logger.error(f"Failed to upload {storage_path}: {e}")
            raise ArtifactStoreError(f"Unable to store telemetry file: {e}") from e

    async def download(self, storage_path: str) -> bytes:
        """
        Fetch an artifact's bytes.

        Raises:
            ArtifactNotFoundError: If nothing is stored at storage_path
            ArtifactStoreError: On any other backend failure
        """
        try:
            return await asyncio.to_thread(self._get, storage_path)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise ArtifactNotFoundError(f"Telemetry file not found: {storage_path}") from e
            logger.error(f"Failed to download {storage_path}: {e}")
            raise ArtifactStoreError(f"Unable to download telemetry file: {e}") from e

    async def check_health(self) -> bool:
        """True when the backend answers for the telemetry bucket."""
        try:
            await asyncio.to_thread(self.client.bucket_exists, self.bucket)
            return True
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return False


# Global artifact store instance
artifact_store = MinIOArtifactStore()
