"""
Custom exception classes.

Error hierarchy shared by the API, the worker and every pipeline module.
"""

from typing import Optional, Union
from uuid import UUID


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, job_id: Optional[Union[UUID, str]] = None, code: Optional[str] = None):
        """
        Initialize pipeline error.

        Args:
            message: Error message
            job_id: Optional job ID for context
            code: Optional machine-readable error code
        """
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.code = code


class ConfigError(PipelineError):
    """Raised when configuration is invalid or missing."""
    pass


class ValidationError(PipelineError):
    """Raised when input validation fails."""
    pass


class NotFoundError(PipelineError):
    """Raised when a job, batch or post does not exist."""
    pass


class RetryableError(PipelineError):
    """Raised when an operation can be retried (network errors, 5xx, timeouts)."""
    pass


class RateLimitError(RetryableError):
    """Raised when an upstream API rate limit is hit."""

    def __init__(
        self,
        message: str,
        job_id: Optional[Union[UUID, str]] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, job_id=job_id, code="rate_limited")
        self.retry_after = retry_after


class GenerationError(PipelineError):
    """Raised when the generation provider reports a failure or returns no artifact."""
    pass


class MediaTransformError(PipelineError):
    """Raised when a local ffmpeg transform fails."""
    pass


class DistributionApiError(PipelineError):
    """Raised when the distribution endpoint returns an error response."""

    def __init__(
        self,
        message: str,
        status: int = 0,
        body: Optional[str] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, code="distribution_api_error")
        self.status = status
        self.body = body
        self.retry_after = retry_after
