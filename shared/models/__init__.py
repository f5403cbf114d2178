"""
Data models for the pipeline engine.

This module exports all Pydantic models used across pipeline modules.
"""

from .steps import (
    PipelineStep,
    VideoGenerationStep,
    VideoGenerationConfig,
    BatchVideoGenerationStep,
    BatchVideoGenerationConfig,
    BatchImageEntry,
    TextOverlayStep,
    TextOverlayConfig,
    BgMusicStep,
    BgMusicConfig,
    AttachVideoStep,
    AttachVideoConfig,
    ComposeStep,
    ComposeConfig,
    ComposeLayer,
    LayerSource,
    enabled_steps,
)
from .job import (
    Job,
    PipelineJob,
    StepResult,
    PublishOverrides,
    JobStatus,
    PublishMode,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
)
from .batch import Batch, MasterConfig, MasterModelConfig, BatchStatus, derive_batch_status
from .post import Post, PostStatus, PublishTarget, DELIVERED_POST_STATUSES, derive_post_status

__all__ = [
    # Step models
    "PipelineStep",
    "VideoGenerationStep",
    "VideoGenerationConfig",
    "BatchVideoGenerationStep",
    "BatchVideoGenerationConfig",
    "BatchImageEntry",
    "TextOverlayStep",
    "TextOverlayConfig",
    "BgMusicStep",
    "BgMusicConfig",
    "AttachVideoStep",
    "AttachVideoConfig",
    "ComposeStep",
    "ComposeConfig",
    "ComposeLayer",
    "LayerSource",
    "enabled_steps",
    # Job models
    "Job",
    "PipelineJob",
    "StepResult",
    "PublishOverrides",
    "JobStatus",
    "PublishMode",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    # Batch models
    "Batch",
    "MasterConfig",
    "MasterModelConfig",
    "BatchStatus",
    "derive_batch_status",
    # Post models
    "Post",
    "PostStatus",
    "PublishTarget",
    "DELIVERED_POST_STATUSES",
    "derive_post_status",
]
