"""
Google Cloud Storage client module.
Holds source PDFs, signature images and finalized PDFs.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import google.auth
from google.api_core.exceptions import NotFound
from google.auth.transport.requests import Request
from google.cloud import storage
from google.cloud.storage import Blob

from app.config import get_settings, Settings
from app.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class BlobNotFoundError(ExternalServiceError):
    def __init__(self, path: str):
        super().__init__("blob store", f"object not found: {path}")
        self.path = path


def content_disposition(filename: str) -> str:
    """
    Build an attachment Content-Disposition header (RFC 6266).
    Non-ASCII names get an ASCII fallback plus a UTF-8 filename*.
    """
    try:
        filename.encode("ascii")
        safe_filename = filename.replace('"', '\\"')
        return f'attachment; filename="{safe_filename}"'
    except UnicodeEncodeError:
        encoded = quote(filename, safe="")
        ascii_fallback = "".join(c if ord(c) < 128 else "_" for c in filename).replace('"', "")
        return f"attachment; filename=\"{ascii_fallback}\"; filename*=UTF-8''{encoded}"


class GCSBlobStore:
    """Async facade over a GCS bucket; blocking SDK calls run in worker threads."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.timeout = self.settings.blob_timeout_seconds
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket)
        return self._bucket

    async def _run(self, func, *args, **kwargs):
        # Hard ceiling on top of the SDK's own per-request timeout
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=self.timeout + 5,
        )

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes and return the object path used as the stored reference."""
        blob = self.bucket.blob(path)
        try:
            await self._run(blob.upload_from_string, data, content_type=content_type, timeout=self.timeout)
        except Exception as e:
            logger.error(f"Upload to {path} failed: {e}")
            raise ExternalServiceError("blob store", f"upload failed for {path}")
        logger.info(f"Uploaded {len(data)} bytes to {path}")
        return path

    async def fetch(self, path: str) -> bytes:
        blob = self.bucket.blob(path)
        try:
            data = await self._run(blob.download_as_bytes, timeout=self.timeout)
        except NotFound:
            raise BlobNotFoundError(path)
        except Exception as e:
            logger.error(f"Download of {path} failed: {e}")
            raise ExternalServiceError("blob store", f"download failed for {path}")
        return data

    async def delete(self, path: str) -> bool:
        """
        Delete an object. Failures are logged and reported as False, never raised.
        """
        try:
            await self._run(self.bucket.blob(path).delete, timeout=self.timeout)
            logger.info(f"Deleted blob {path}")
            return True
        except Exception as e:
            logger.warning(f"Failed to delete blob {path}: {e}")
            return False

    def _generate_iam_signed_url(
        self,
        blob: Blob,
        expiration_delta: timedelta,
        response_disposition: Optional[str] = None,
    ) -> str:
        """
        Generates a V4 signed URL using the runtime service account's identity (IAM).
        """
        credentials, _ = google.auth.default()
        credentials.refresh(Request())

        return blob.generate_signed_url(
            version="v4",
            expiration=expiration_delta,
            method="GET",
            response_disposition=response_disposition,
            service_account_email=credentials.service_account_email,
            access_token=credentials.token,
        )

    async def signed_url(
        self,
        path: str,
        expiration_minutes: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> str:
        """V4 signed GET URL for an object."""
        blob = self.bucket.blob(path)
        expiration_delta = timedelta(
            minutes=expiration_minutes or self.settings.gcs_signed_url_expiration_minutes
        )
        disposition = content_disposition(filename) if filename else None
        try:
            return await self._run(self._generate_iam_signed_url, blob, expiration_delta, disposition)
        except Exception as e:
            logger.error(f"Signed URL generation for {path} failed: {e}")
            raise ExternalServiceError("blob store", f"could not sign URL for {path}")


# Singleton instance
_blob_store: Optional[GCSBlobStore] = None


def get_blob_store() -> GCSBlobStore:
    """Get the GCS blob store singleton."""
    global _blob_store
    if _blob_store is None:
        _blob_store = GCSBlobStore()
    return _blob_store
