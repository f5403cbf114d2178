"""
Job-related data models.

Defines the legacy single-step Job and the multi-step PipelineJob.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from shared.models.steps import PipelineStep, enabled_steps

JobStatus = Literal["queued", "processing", "completed", "failed"]
PublishMode = Literal["now", "schedule", "queue", "draft"]

TERMINAL_STATUSES = ("completed", "failed")
ACTIVE_STATUSES = ("queued", "processing")


class StepResult(BaseModel):
    """Output of one executed step."""

    step_id: str
    type: str
    label: str
    output_url: str


class PublishOverrides(BaseModel):
    """Per-job publishing settings that win over the batch configuration."""

    caption: Optional[str] = None
    publish_mode: Optional[PublishMode] = None
    scheduled_for: Optional[str] = None
    timezone: Optional[str] = None


class Job(BaseModel):
    """Legacy single-step motion-control job."""

    id: str
    status: JobStatus = "queued"
    video_url: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None
    step: Optional[str] = None
    output_url: Optional[str] = None
    provider_request_id: Optional[str] = None
    # Request whose outcome was claimed but whose step is not recorded yet
    resumed_request_id: Optional[str] = None
    batch_id: Optional[str] = None
    recovery_attempts: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None


class PipelineJob(BaseModel):
    """A unit of work executing an ordered list of steps."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    status: JobStatus = "queued"
    pipeline: List[PipelineStep]
    current_step: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    step: Optional[str] = None
    # Remote source that still has to be fetched into storage
    source_url: Optional[str] = None
    video_url: Optional[str] = None
    output_url: Optional[str] = None
    step_results: List[StepResult] = Field(default_factory=list)
    provider_request_id: Optional[str] = None
    # Request whose outcome was claimed but whose step is not recorded yet
    resumed_request_id: Optional[str] = None
    batch_id: Optional[str] = None
    model_id: Optional[str] = None
    regenerated_from: Optional[str] = None
    overrides: Optional[PublishOverrides] = None
    publish_status: Optional[Literal["posted", "rejected"]] = None
    recovery_attempts: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def enabled_steps(self) -> List[PipelineStep]:
        return enabled_steps(self.pipeline)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_provider(self) -> bool:
        return self.status == "processing" and bool(self.provider_request_id)

    @field_serializer("created_at", "updated_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None
