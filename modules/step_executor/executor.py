"""
Step executor.

Runs one pipeline step against the current working video. Synchronous steps
return a new local file; provider-delegated steps return the request handle
and the runner suspends.
"""

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from modules.generation_provider import GenerationProviderClient, build_model_input, get_provider
from modules.generation_provider.config import get_model_config
from modules.media_transform import apply
from shared.config import settings
from shared.errors import MediaTransformError, ValidationError
from shared.logging import get_logger
from shared.models.job import StepResult
from shared.models.steps import (
    AttachVideoStep,
    BatchVideoGenerationStep,
    BgMusicStep,
    ComposeStep,
    PipelineStep,
    TextOverlayStep,
    VideoGenerationStep,
)
from shared.storage import StorageClient, storage

logger = get_logger("step_executor")

_STATIC_LABELS = {
    "text-overlay": "Adding text overlay",
    "bg-music": "Mixing background music",
    "attach-video": "Attaching video clip",
    "compose": "Composing media layers",
}


def get_step_label(step: PipelineStep) -> str:
    """Human-readable label used in progress notes and step results."""
    if isinstance(step, (VideoGenerationStep, BatchVideoGenerationStep)):
        return f"Generating video ({get_model_config(step.config.mode)['label']})"
    return _STATIC_LABELS.get(step.type, step.type)


def step_output_name(job_id: str, step_index: int, suffix: str = "") -> str:
    """Storage object name of a step's output. Fixed per (job, step) so re-runs overwrite."""
    return f"pipeline/{job_id}/step-{step_index}{suffix}.mp4"


@dataclass
class SyncResult:
    """A step finished in-process; path is the new local working file."""

    path: str


@dataclass
class PendingProvider:
    """A step was submitted to the generation provider."""

    request_id: str
    mode: str


StepOutcome = Union[SyncResult, PendingProvider]


@dataclass
class StepContext:
    """
    Everything a step needs besides its own config.

    working_url is the public URL of the current working video (None before a
    no-input first step); working_path is its local copy, fetched on demand.
    step_outputs maps step id -> output URL for every step already executed.
    """

    job_id: str
    step_index: int
    working_url: Optional[str] = None
    working_path: Optional[str] = None
    step_outputs: Dict[str, str] = field(default_factory=dict)
    work_dir: Optional[Path] = None

    def __post_init__(self):
        if self.work_dir is None:
            self.work_dir = Path(tempfile.gettempdir()) / "pipeline" / self.job_id
        self.work_dir.mkdir(parents=True, exist_ok=True)

    def local_path(self, name: str) -> str:
        return str(self.work_dir / name)

    @classmethod
    def from_results(
        cls,
        job_id: str,
        step_index: int,
        step_results: List[StepResult],
        working_url: Optional[str] = None
    ) -> "StepContext":
        """Rebuild the context of a resumed job from its persisted step results."""
        outputs = {result.step_id: result.output_url for result in step_results}
        if step_results:
            working_url = step_results[-1].output_url
        return cls(job_id=job_id, step_index=step_index, working_url=working_url, step_outputs=outputs)


class StepExecutor:
    """Executes single pipeline steps."""

    def __init__(
        self,
        provider: Optional[GenerationProviderClient] = None,
        storage_client: Optional[StorageClient] = None,
        transform: Callable[..., Any] = apply
    ):
        self._provider = provider
        self.storage = storage_client or storage
        self.transform = transform

    @property
    def provider(self) -> GenerationProviderClient:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    async def _working_path(self, context: StepContext) -> str:
        if context.working_path:
            return context.working_path
        if not context.working_url:
            raise ValidationError("This step needs an input video but none is available", job_id=context.job_id)
        path = context.local_path(f"input-{context.step_index}.mp4")
        context.working_path = await self.storage.download_to_path(context.working_url, path)
        return context.working_path

    async def _fetch(self, context: StepContext, url: str, name: str) -> str:
        return await self.storage.download_to_path(url, context.local_path(name))

    def _output(self, context: StepContext, kind: str) -> str:
        return context.local_path(f"step-{context.step_index}-{kind}.mp4")

    async def execute(self, step: PipelineStep, context: StepContext) -> StepOutcome:
        """
        Execute one step.

        Raises:
            ValidationError: The step cannot run with the given inputs
            MediaTransformError: A local transform failed
            GenerationError: The provider rejected the request
        """
        logger.info(
            "Executing step",
            extra={"job_id": context.job_id, "step_index": context.step_index, "step_type": step.type}
        )
        if isinstance(step, VideoGenerationStep):
            return await self._video_generation(step, context)
        if isinstance(step, BatchVideoGenerationStep):
            raise ValidationError(
                "batch-video-generation must be expanded into per-image jobs before running",
                job_id=context.job_id
            )
        if isinstance(step, TextOverlayStep):
            return SyncResult(await self.transform(
                "text_overlay", [await self._working_path(context)], step.config,
                job_id=context.job_id, output_path=self._output(context, "text")
            ))
        if isinstance(step, BgMusicStep):
            return SyncResult(await self.mix_music(step, await self._working_path(context), context))
        if isinstance(step, AttachVideoStep):
            return SyncResult(await self._attach_video(step, context))
        if isinstance(step, ComposeStep):
            return SyncResult(await self._compose(step, context))
        raise ValidationError(f"Unsupported step type: {step.type}", job_id=context.job_id)

    async def _video_generation(self, step: VideoGenerationStep, context: StepContext) -> PendingProvider:
        config = step.config
        if not config.image_url:
            raise ValidationError(f"Step {step.id}: no reference image", job_id=context.job_id)

        video_url = None
        if step.requires_input_video:
            max_seconds = config.max_seconds or settings.default_max_seconds
            trimmed = await self.transform(
                "trim", [await self._working_path(context)], {"max_seconds": max_seconds},
                job_id=context.job_id, output_path=self._output(context, "trimmed")
            )
            video_url = await self.storage.upload_file(
                trimmed, step_output_name(context.job_id, context.step_index, "-input")
            )

        model_input = build_model_input(config, config.image_url, video_url)
        request_id = await self.provider.submit(config.mode, model_input, settings.webhook_url)
        logger.info(
            "Step submitted to provider",
            extra={"job_id": context.job_id, "step_index": context.step_index, "request_id": request_id}
        )
        return PendingProvider(request_id=request_id, mode=config.mode)

    async def consume_provider_result(self, step: PipelineStep, artifact_url: str, context: StepContext) -> str:
        """
        Fetch a provider artifact into a local working file.

        Audio is stripped when the step asked for none; motion control
        otherwise keeps the driving video's sound.
        """
        path = await self._fetch(context, artifact_url, f"step-{context.step_index}-generated.mp4")
        if isinstance(step, VideoGenerationStep) and step.config.generate_audio is False:
            path = await self.transform(
                "strip_audio", [path], job_id=context.job_id, output_path=self._output(context, "silent")
            )
        context.working_path = path
        return path

    async def mix_music(
        self,
        step: BgMusicStep,
        video_path: str,
        context: StepContext,
        mode: Optional[str] = None
    ) -> str:
        """Mix the step's track under video_path. mode defaults to the step's own mode."""
        config = step.config
        track = await self._fetch(context, config.track_url, f"music-{step.id}")
        return await self.transform(
            "mix_audio",
            [video_path, track],
            {
                "volume": config.volume,
                "mode": mode or config.effective_audio_mode(),
                "fade_in": config.fade_in,
                "fade_out": config.fade_out,
            },
            job_id=context.job_id,
            output_path=self._output(context, f"music-{step.id}")
        )

    async def _attach_video(self, step: AttachVideoStep, context: StepContext) -> str:
        config = step.config
        clip_url = config.video_url
        if not clip_url and config.source_step_id:
            clip_url = context.step_outputs.get(config.source_step_id)
        if not clip_url:
            raise ValidationError(
                f"attach-video source {config.source_step_id!r} has no output yet", job_id=context.job_id
            )
        clip = await self._fetch(context, clip_url, f"attach-{step.id}.mp4")
        working = await self._working_path(context)
        ordered = [clip, working] if config.position == "before" else [working, clip]
        return await self.transform(
            "concat", ordered, job_id=context.job_id, output_path=self._output(context, "attached")
        )

    async def _compose(self, step: ComposeStep, context: StepContext) -> str:
        layer_paths: Dict[str, str] = {}
        for layer in step.config.layers:
            if layer.source.type == "step-output":
                url = context.step_outputs.get(layer.source.step_id or "")
            else:
                url = layer.source.url
            if not url:
                raise MediaTransformError(
                    f"Compose layer {layer.id} has no resolvable source", job_id=context.job_id
                )
            suffix = Path(url.split("?")[0]).suffix or (".png" if layer.type == "image" else ".mp4")
            layer_paths[layer.id] = await self._fetch(context, url, f"layer-{layer.id}{suffix}")
        return await self.transform(
            "compose", layer_paths, step.config,
            job_id=context.job_id, output_path=self._output(context, "composed")
        )
