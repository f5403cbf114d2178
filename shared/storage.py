"""
Storage utilities.

Supabase Storage operations for pipeline artifacts, plus plain HTTP
download of remote artifacts (provider results, source videos, music tracks).
"""

import asyncio
import mimetypes
from pathlib import Path
from typing import Optional, Any, Callable
from urllib.parse import urlparse, unquote

import httpx
from supabase import create_client

from shared.config import settings
from shared.errors import RetryableError, ConfigError, ValidationError
from shared.retry import retry_with_backoff
from shared.logging import get_logger

logger = get_logger("storage")

# Single artifact upper bound (in bytes)
MAX_ARTIFACT_SIZE = 200 * 1024 * 1024  # 200MB
DOWNLOAD_TIMEOUT_SECONDS = 120.0
PUBLIC_PATH_MARKER = "/storage/v1/object/public/"


class StorageClient:
    """Supabase Storage client for artifact operations."""

    def __init__(self, bucket: Optional[str] = None):
        """
        Initialize storage client.

        Args:
            bucket: Bucket for pipeline artifacts (defaults to settings.storage_bucket)
        """
        try:
            self.client = create_client(
                settings.supabase_url,
                settings.supabase_service_key
            )
            self.storage = self.client.storage
            self.bucket = bucket or settings.storage_bucket
        except Exception as e:
            raise ConfigError(f"Failed to initialize storage client: {str(e)}") from e

    async def _execute_sync(self, func: Callable[[], Any]) -> Any:
        """Execute a synchronous Supabase storage operation in an async context."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    def _detect_content_type(self, path: str, default: Optional[str] = None) -> str:
        content_type, _ = mimetypes.guess_type(path)
        if content_type:
            return content_type
        return default or "application/octet-stream"

    @retry_with_backoff(max_attempts=3, base_delay=2)
    async def upload(
        self,
        data: bytes,
        name: str,
        content_type: Optional[str] = None
    ) -> str:
        """
        Upload bytes to the artifact bucket.

        Uploads overwrite an existing object with the same name, so callers
        that derive the name from (job, step) get at most one stored artifact
        per step even when a step is replayed.

        Args:
            data: File contents
            name: Object path inside the bucket
            content_type: Content type (auto-detected if not provided)

        Returns:
            Public URL of the uploaded object

        Raises:
            ValidationError: If the artifact exceeds MAX_ARTIFACT_SIZE
            RetryableError: If the upload fails
        """
        if len(data) > MAX_ARTIFACT_SIZE:
            raise ValidationError(
                f"Artifact size ({len(data) / (1024 * 1024):.2f} MB) exceeds maximum of "
                f"{MAX_ARTIFACT_SIZE / (1024 * 1024):.0f} MB"
            )
        content_type = content_type or self._detect_content_type(name, "video/mp4")

        try:
            def _upload():
                return self.storage.from_(self.bucket).upload(
                    path=name,
                    file=data,
                    file_options={"content-type": content_type, "upsert": "true"}
                )

            await self._execute_sync(_upload)
            public_url = await self._execute_sync(
                lambda: self.storage.from_(self.bucket).get_public_url(name)
            )
        except Exception as e:
            logger.error(
                f"Failed to upload {self.bucket}/{name}",
                extra={"bucket": self.bucket, "path": name, "error": str(e)}
            )
            raise RetryableError(f"Failed to upload file: {str(e)}") from e

        logger.info(
            f"Uploaded {self.bucket}/{name}",
            extra={"bucket": self.bucket, "path": name, "size": len(data)}
        )
        return public_url.rstrip("?")

    async def upload_file(self, path: str, name: str, content_type: Optional[str] = None) -> str:
        """Upload a local file. See upload()."""
        data = await self._execute_sync(Path(path).read_bytes)
        return await self.upload(data, name, content_type)

    @retry_with_backoff(max_attempts=3, base_delay=2)
    async def download_to_bytes(self, url: str) -> bytes:
        """
        Download any HTTP(S) URL into memory.

        5xx responses and network errors are retried; 4xx fail fast.
        """
        try:
            async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise RetryableError(f"Failed to download {url[:120]}: {str(e)}") from e

        if response.status_code >= 500:
            raise RetryableError(f"Download failed with HTTP {response.status_code}: {url[:120]}")
        if response.status_code >= 400:
            raise ValidationError(f"Download failed with HTTP {response.status_code}: {url[:120]}")

        logger.info("Downloaded remote file", extra={"url": url[:120], "size": len(response.content)})
        return response.content

    async def download_to_path(self, url: str, dest: str) -> str:
        """Download a URL into a local file and return the path."""
        data = await self.download_to_bytes(url)
        await self._execute_sync(lambda: Path(dest).write_bytes(data))
        return dest

    def object_path_from_url(self, public_url: str) -> Optional[str]:
        """Extract the bucket-relative object path from one of our public URLs."""
        parsed = urlparse(public_url)
        marker_at = parsed.path.find(PUBLIC_PATH_MARKER)
        if marker_at < 0:
            return None
        rest = parsed.path[marker_at + len(PUBLIC_PATH_MARKER):]
        bucket, _, object_path = rest.partition("/")
        if bucket != self.bucket or not object_path:
            return None
        return unquote(object_path)

    async def signed_url_for(self, public_url: str, expires_in: int = 3600) -> str:
        """
        Create a temporary URL for an object referenced by its public URL.

        URLs that do not point into the artifact bucket are returned unchanged.
        """
        object_path = self.object_path_from_url(public_url)
        if not object_path:
            return public_url
        try:
            response = await self._execute_sync(
                lambda: self.storage.from_(self.bucket).create_signed_url(
                    path=object_path,
                    expires_in=expires_in
                )
            )
        except Exception as e:
            raise RetryableError(f"Failed to generate signed URL: {str(e)}") from e
        return response.get("signedURL") or response.get("signedUrl") or public_url


# Singleton instance
storage = StorageClient()
