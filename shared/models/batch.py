"""
Batch data models.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from shared.models.job import PublishMode
from shared.models.steps import PipelineStep

BatchStatus = Literal["pending", "processing", "completed", "failed", "partial"]


class MasterModelConfig(BaseModel):
    """One recipient of a master batch, captured at creation time."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    model_name: str
    primary_image_url: Optional[str] = None
    account_ids: List[str] = Field(default_factory=list)


class MasterConfig(BaseModel):
    caption: str = ""
    scheduled_for: Optional[str] = None
    timezone: Optional[str] = None
    publish_mode: PublishMode = "draft"
    models: List[MasterModelConfig] = Field(default_factory=list)

    def config_for_model(self, model_id: Optional[str]) -> Optional[MasterModelConfig]:
        for model in self.models:
            if model.model_id == model_id:
                return model
        return None


class Batch(BaseModel):
    """Fan-out of one pipeline template into N child jobs."""

    id: str
    name: str
    status: BatchStatus = "pending"
    total_jobs: int = Field(default=0, ge=0)
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    pipeline: List[PipelineStep] = Field(default_factory=list)
    is_master: bool = False
    master_config: Optional[MasterConfig] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def progress(self) -> int:
        """Percentage of children that reached a terminal status."""
        if not self.total_jobs:
            return 0
        return round((self.completed_jobs + self.failed_jobs) * 100 / self.total_jobs)

    @field_serializer("created_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None


def derive_batch_status(total: int, completed: int, failed: int) -> BatchStatus:
    """
    Aggregate batch status from its counters.

    completed when every child completed, failed when every child failed,
    partial when all children finished with a mix, processing otherwise.
    """
    if total <= 0:
        return "pending"
    if completed + failed < total:
        return "processing"
    if failed == 0:
        return "completed"
    if completed == 0:
        return "failed"
    return "partial"
