"""
Distribution API client.

Presigned media intake and post creation against the social distribution
API. Requests are retried through ``retry_with_backoff`` on 429, 5xx and
timeouts, waiting for the server's Retry-After when it sends one.
"""

from typing import Any, Dict, Optional

import httpx

from shared.config import settings
from shared.errors import ConfigError, DistributionApiError, RateLimitError, RetryableError
from shared.logging import get_logger
from shared.retry import retry_with_backoff

logger = get_logger("publisher.client")

# One retry on 429, 5xx and timeouts
MAX_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 2.0
POST_TIMEOUT_SECONDS = 60.0


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None


class DistributionClient:
    """Async client for the distribution API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = (api_url or settings.distribution_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.distribution_api_key
        self.timeout = timeout or settings.distribution_timeout_seconds
        self.upload_timeout = upload_timeout or settings.distribution_upload_timeout_seconds
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @retry_with_backoff(max_attempts=MAX_ATTEMPTS, base_delay=RETRY_DELAY_SECONDS)
    async def request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Call an API endpoint and return its JSON body.

        Raises:
            ConfigError: No API key configured
            RateLimitError: 429 on every attempt
            RetryableError: 5xx, timeout or transport error on every attempt
            DistributionApiError: Any other non-2xx response
        """
        if not self.api_key:
            raise ConfigError("DISTRIBUTION_API_KEY is not configured")

        url = f"{self.api_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = timeout or self.timeout

        try:
            async with self._client(timeout) as client:
                response = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise RetryableError(f"Distribution API request timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise RetryableError(f"Distribution API request failed: {e}") from e

        if response.is_success:
            return response.json() if response.content else {}

        message = f"Distribution API {response.status_code}: {response.text[:500]}"
        if response.status_code == 429:
            raise RateLimitError(message, retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise RetryableError(message)

        logger.error(
            "Distribution API request failed",
            extra={"endpoint": endpoint, "status": response.status_code, "error": message}
        )
        raise DistributionApiError(message, status=response.status_code, body=response.text)

    async def presign_upload(self, filename: str, content_type: str = "video/mp4") -> Dict[str, str]:
        """Returns {"uploadUrl", "publicUrl"} for a media upload."""
        data = await self.request("POST", "/media/presign", {"filename": filename, "contentType": content_type})
        if not data.get("uploadUrl") or not data.get("publicUrl"):
            raise DistributionApiError("Presign response is missing uploadUrl/publicUrl", body=str(data))
        return data

    async def upload(self, upload_url: str, data: bytes, content_type: str = "video/mp4") -> None:
        """PUT the media bytes to a presigned URL."""
        try:
            async with self._client(self.upload_timeout) as client:
                response = await client.put(
                    upload_url,
                    content=data,
                    headers={"Content-Type": content_type, "Content-Length": str(len(data))}
                )
        except httpx.TimeoutException as e:
            raise DistributionApiError(
                f"Media upload timed out after {self.upload_timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise DistributionApiError(f"Media upload failed: {e}") from e

        if not response.is_success:
            raise DistributionApiError(
                f"Media upload failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        logger.info("Media uploaded to distribution intake", extra={"size": len(data)})

    async def create_post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create a post; returns the post object ({"_id", "status", "platforms": [...]})."""
        data = await self.request("POST", "/posts", body, timeout=POST_TIMEOUT_SECONDS)
        post = data.get("post") or data
        if not post.get("_id") and not post.get("id"):
            raise DistributionApiError("Create post response has no post id", body=str(data))
        return post
