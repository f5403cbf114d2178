"""
Configuration management.

Every tunable of the engine comes from environment variables (or a ``.env``
file beside the process). The ``settings`` singleton is built at import, so a
missing credential stops the API or worker at startup rather than on the
first job.
"""

from typing import List, Literal, Optional, Tuple
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from shared.errors import ConfigError


def _require(value: str, env_name: str) -> str:
    if not value:
        raise ConfigError(f"{env_name} is required")
    return value


def _require_scheme(value: str, env_name: str, schemes: Tuple[str, ...], message: str) -> str:
    if not _require(value, env_name).startswith(schemes):
        raise ConfigError(f"{env_name} {message}")
    return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Credentials
    supabase_url: str
    supabase_service_key: str
    redis_url: str
    replicate_api_token: str

    environment: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Generation provider
    provider_timeout_seconds: float = 30.0

    # Distribution API (social publishing)
    distribution_api_url: str = "https://getlate.dev/api/v1"
    distribution_api_key: str = ""
    distribution_timeout_seconds: float = 30.0
    distribution_upload_timeout_seconds: float = 120.0

    # Where the provider can reach this service; the webhook URL is built from it
    public_base_url: str = "http://localhost:8000"
    # Comma-separated origins allowed by CORS ("*" for any)
    cors_origins: str = "*"

    # Task queue: the name defaults to pipeline_jobs_{environment} so a local
    # worker never drains the production queue
    redis_queue_name: Optional[str] = None
    worker_concurrency: int = 5

    # Recovery sweep
    stuck_job_threshold_minutes: int = 10
    recovery_min_interval_seconds: int = 60
    max_recovery_attempts: int = 3

    # Publishing guards
    post_lock_stale_minutes: int = 15
    idempotency_stale_minutes: int = 30
    default_timezone: str = "Asia/Kolkata"

    # Pipeline defaults
    default_max_seconds: int = 10
    storage_bucket: str = "pipeline-media"
    batch_cache_ttl_seconds: int = 30

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        return _require_scheme(
            v, "SUPABASE_URL", ("http://", "https://"), "must be a valid HTTP/HTTPS URL"
        ).rstrip("/")

    @field_validator("supabase_service_key")
    @classmethod
    def validate_supabase_service_key(cls, v: str) -> str:
        # Service keys are JWTs; anything this short is a placeholder
        if len(_require(v, "SUPABASE_SERVICE_KEY")) < 50:
            raise ConfigError("SUPABASE_SERVICE_KEY appears to be invalid")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        return _require_scheme(v, "REDIS_URL", ("redis://", "rediss://"), "must start with redis:// or rediss://")

    @field_validator("replicate_api_token")
    @classmethod
    def validate_replicate_api_token(cls, v: str) -> str:
        _require_scheme(v, "REPLICATE_API_TOKEN", ("r8_",), "must start with 'r8_'")
        if len(v) < 20:
            raise ConfigError("REPLICATE_API_TOKEN appears to be invalid")
        return v

    @field_validator("public_base_url", "distribution_api_url")
    @classmethod
    def validate_http_url(cls, v: str, info) -> str:
        return _require_scheme(
            v, info.field_name.upper(), ("http://", "https://"), "must be a valid HTTP/HTTPS URL"
        ).rstrip("/")

    @property
    def queue_name(self) -> str:
        return self.redis_queue_name or f"pipeline_jobs_{self.environment}"

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def webhook_url(self) -> str:
        """URL the generation provider calls when a prediction completes."""
        return f"{self.public_base_url}/api/v1/provider-webhook"


try:
    settings = Settings()
except ConfigError:
    raise
except Exception as e:
    raise ConfigError(f"Failed to load configuration: {str(e)}") from e
