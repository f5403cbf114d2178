"""
Validation utilities.

Synchronous checks on job creation requests. Anything rejected here never
becomes a job.
"""

from typing import List, Optional, Sequence
from urllib.parse import urlparse

from shared.errors import ValidationError
from shared.models.steps import (
    AttachVideoStep,
    BatchVideoGenerationStep,
    BgMusicStep,
    ComposeStep,
    PipelineStep,
    VideoGenerationStep,
    enabled_steps,
)


def validate_url(url: Optional[str], field: str = "url") -> str:
    """
    Validate an HTTP(S) URL.

    Raises:
        ValidationError: If the URL is missing or not HTTP(S)
    """
    if not url or not url.strip():
        raise ValidationError(f"{field} is required")
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field} must be a valid HTTP/HTTPS URL")
    return url.strip()


def validate_steps(pipeline: Sequence[PipelineStep], allow_fan_out: bool = False) -> List[PipelineStep]:
    """
    Validate the step list of a pipeline.

    Args:
        pipeline: All steps, enabled or not
        allow_fan_out: Whether batch-video-generation steps are accepted
            (only batch creation expands them)

    Returns:
        The enabled steps, in order

    Raises:
        ValidationError: If the pipeline cannot run
    """
    steps = enabled_steps(list(pipeline))
    if not steps:
        raise ValidationError("Pipeline has no enabled steps")

    ids = [step.id for step in pipeline]
    if len(ids) != len(set(ids)):
        raise ValidationError("Step ids must be unique within a pipeline")

    step_ids = set(ids)
    for step in steps:
        if isinstance(step, BatchVideoGenerationStep):
            if not allow_fan_out:
                raise ValidationError(
                    "batch-video-generation steps are only allowed when creating a batch"
                )
        elif isinstance(step, BgMusicStep):
            validate_url(step.config.track_url, "bg-music track_url")
            unknown = [s for s in step.config.apply_to_steps if s not in step_ids]
            if unknown:
                raise ValidationError(f"bg-music applies to unknown steps: {', '.join(unknown)}")
        elif isinstance(step, AttachVideoStep):
            if not step.config.video_url and not step.config.source_step_id:
                raise ValidationError("attach-video needs video_url or source_step_id")
        elif isinstance(step, ComposeStep):
            if not step.config.layers:
                raise ValidationError("Compose step has no layers")
    return steps


def validate_pipeline_request(
    pipeline: Sequence[PipelineStep],
    source_url: Optional[str] = None,
    video_url: Optional[str] = None,
    allow_fan_out: bool = False
) -> List[PipelineStep]:
    """
    Validate a job creation request.

    The first enabled step decides whether a source video is needed, through
    its declared ``requires_input_video`` capability.
    """
    steps = validate_steps(pipeline, allow_fan_out=allow_fan_out)

    if steps[0].requires_input_video and not (source_url or video_url):
        raise ValidationError("A source video is required for the first step of this pipeline")
    if source_url:
        validate_url(source_url, "source_url")
    if video_url:
        validate_url(video_url, "video_url")

    if not allow_fan_out:
        for step in steps:
            if isinstance(step, VideoGenerationStep) and not step.config.image_url:
                raise ValidationError(f"Step {step.id}: a reference image is required for video generation")
    return steps


def fan_out_step(pipeline: Sequence[PipelineStep]) -> Optional[BatchVideoGenerationStep]:
    """The enabled batch-video-generation step of a pipeline, if any."""
    for step in enabled_steps(list(pipeline)):
        if isinstance(step, BatchVideoGenerationStep):
            return step
    return None
