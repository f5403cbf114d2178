"""
Generation provider client.

Thin async wrapper over the Replicate predictions API: submit a request and
get a handle back, poll it, read its result, and parse completion webhooks.
"""

import asyncio
from typing import Any, Callable, Dict, Literal, Optional

import httpx
import replicate
from pydantic import BaseModel
from replicate.exceptions import ModelError, ReplicateError

from modules.generation_provider.config import get_model_config
from shared.config import settings
from shared.errors import GenerationError, RateLimitError, RetryableError
from shared.logging import get_logger
from shared.retry import retry_with_backoff

logger = get_logger("generation_provider.client")

ProviderStatus = Literal["queued", "running", "completed", "failed"]

# Replicate prediction status -> engine status
STATUS_MAP: Dict[str, ProviderStatus] = {
    "starting": "queued",
    "processing": "running",
    "succeeded": "completed",
    "failed": "failed",
    "canceled": "failed",
}


class ProviderEvent(BaseModel):
    """A completion reported by the provider (webhook or poll)."""

    request_id: str
    status: str
    artifact_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and bool(self.artifact_url)


def extract_artifact_url(output: Any) -> Optional[str]:
    """
    Pull the video URL out of a prediction output.

    Output may be a URL string, a list of URLs, a {"video": {"url": ...}}
    dict, or a FileOutput-like object with a ``url`` attribute.
    """
    if output is None:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, (list, tuple)):
        for item in output:
            url = extract_artifact_url(item)
            if url:
                return url
        return None
    if isinstance(output, dict):
        video = output.get("video")
        if isinstance(video, dict) and video.get("url"):
            return video["url"]
        if isinstance(video, str):
            return video
        return output.get("url")
    url = getattr(output, "url", None)
    return str(url) if url else None


def classify_provider_error(error: Exception) -> Exception:
    """Map a Replicate/httpx exception onto the engine's error taxonomy."""
    if isinstance(error, (RetryableError, GenerationError)):
        return error
    status = getattr(error, "status", None)
    if status == 429:
        return RateLimitError(f"Provider rate limit: {error}")
    if isinstance(status, int) and status >= 500:
        return RetryableError(f"Provider server error ({status}): {error}")
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
        return RetryableError(f"Provider request timed out or failed: {error}")

    error_str = str(error).lower()
    if "rate limit" in error_str or "429" in error_str:
        return RateLimitError(f"Provider rate limit: {error}")
    if "timeout" in error_str or "timed out" in error_str:
        return RetryableError(f"Provider timeout: {error}")
    if isinstance(error, ModelError):
        return GenerationError(f"Model error: {error}")
    return GenerationError(f"Provider error: {error}")


class GenerationProviderClient:
    """Replicate-backed generation provider."""

    def __init__(self, api_token: Optional[str] = None, timeout: Optional[float] = None):
        self.client = replicate.Client(api_token=api_token or settings.replicate_api_token)
        self.timeout = timeout or settings.provider_timeout_seconds

    async def _call(self, func: Callable[[], Any]) -> Any:
        """Run a blocking SDK call in the executor with a bounded timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=self.timeout)
        except (ReplicateError, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise classify_provider_error(e) from e

    @retry_with_backoff(max_attempts=3, base_delay=2)
    async def submit(self, mode: str, model_input: Dict[str, Any], webhook_url: Optional[str] = None) -> str:
        """
        Submit one generation request.

        Args:
            mode: video-generation mode (selects the model)
            model_input: Model input built by build_model_input()
            webhook_url: Where the provider reports completion

        Returns:
            Provider request handle (prediction id)
        """
        model = get_model_config(mode)["replicate_string"]
        kwargs: Dict[str, Any] = {"model": model, "input": model_input}
        if webhook_url:
            kwargs["webhook"] = webhook_url
            kwargs["webhook_events_filter"] = ["completed"]

        prediction = await self._call(lambda: self.client.predictions.create(**kwargs))
        logger.info(
            "Submitted generation request",
            extra={"request_id": prediction.id, "model": model, "mode": mode}
        )
        return prediction.id

    @retry_with_backoff(max_attempts=3, base_delay=2)
    async def _get_prediction(self, request_id: str) -> Any:
        return await self._call(lambda: self.client.predictions.get(request_id))

    async def poll_status(self, request_id: str) -> ProviderStatus:
        """
        Current status of a request.

        Unknown provider statuses are reported as failed.
        """
        prediction = await self._get_prediction(request_id)
        status = STATUS_MAP.get(prediction.status)
        if status is None:
            logger.warning(
                "Unknown provider status",
                extra={"request_id": request_id, "provider_status": prediction.status}
            )
            return "failed"
        return status

    async def poll_event(self, request_id: str) -> ProviderEvent:
        """Status, artifact and error of a request in one call."""
        prediction = await self._get_prediction(request_id)
        return ProviderEvent(
            request_id=request_id,
            status=STATUS_MAP.get(prediction.status, "failed"),
            artifact_url=extract_artifact_url(prediction.output),
            error=str(prediction.error) if prediction.error else None,
        )

    async def poll_result(self, request_id: str) -> str:
        """
        Artifact URL of a completed request.

        Raises:
            GenerationError: If the request has not succeeded or has no output
        """
        event = await self.poll_event(request_id)
        if event.status != "completed":
            raise GenerationError(f"Request {request_id} is {event.status}, no result available")
        if not event.artifact_url:
            raise GenerationError(f"No video URL in provider result for {request_id}")
        return event.artifact_url

    @staticmethod
    def parse_webhook(body: Dict[str, Any]) -> ProviderEvent:
        """
        Parse a webhook body (a Replicate prediction object).

        Raises:
            GenerationError: If the body carries no request id
        """
        request_id = body.get("id") or body.get("request_id")
        if not request_id:
            raise GenerationError("Webhook payload has no request id")
        provider_status = body.get("status", "")
        status = STATUS_MAP.get(provider_status, "failed" if provider_status else "running")
        error = body.get("error")
        if status == "failed" and not error:
            error = f"Provider job status: {provider_status or 'unknown'}"
        return ProviderEvent(
            request_id=request_id,
            status=status,
            artifact_url=extract_artifact_url(body.get("output")),
            error=str(error) if error else None,
        )


_provider: Optional[GenerationProviderClient] = None


def get_provider() -> GenerationProviderClient:
    """Process-wide provider client, created on first use."""
    global _provider
    if _provider is None:
        _provider = GenerationProviderClient()
    return _provider
