"""
Pipeline step models.

A pipeline is an ordered list of steps. Each step carries a ``type`` tag and
a config whose shape depends on that tag; pydantic resolves the tag into one
of the concrete step classes below.

Every step class also declares two capabilities used by validation and by
the runner:

- ``requires_input_video``: the step consumes the working video, so a job
  whose first enabled step has this set needs a source video.
- ``is_async``: the step is delegated to the generation provider and the
  runner suspends after submitting it.
"""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

VideoGenMode = Literal["motion-control", "subtle-animation"]
AudioMode = Literal["replace", "mix"]

STEP_TYPES = (
    "video-generation",
    "batch-video-generation",
    "text-overlay",
    "bg-music",
    "attach-video",
    "compose",
)


class VideoGenerationConfig(BaseModel):
    """Single provider-backed generation."""

    model_config = ConfigDict(protected_namespaces=())

    mode: VideoGenMode = "motion-control"
    model_id: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None
    max_seconds: Optional[int] = Field(default=None, gt=0)
    aspect_ratio: Optional[str] = None
    duration: Optional[str] = None
    resolution: Optional[Literal["720p", "1080p", "4k"]] = None
    # Motion control: keep original sound. Subtle animation: generate audio.
    generate_audio: Optional[bool] = None
    negative_prompt: Optional[str] = None


class BatchImageEntry(BaseModel):
    image_url: str
    image_id: Optional[str] = None
    filename: Optional[str] = None


class BatchVideoGenerationConfig(BaseModel):
    """Fan-out generation: one child job per image."""

    model_config = ConfigDict(protected_namespaces=())

    mode: VideoGenMode = "motion-control"
    images: List[BatchImageEntry] = Field(default_factory=list)
    model_id: Optional[str] = None
    prompt: Optional[str] = None
    max_seconds: Optional[int] = Field(default=None, gt=0)
    aspect_ratio: Optional[str] = None
    duration: Optional[str] = None
    resolution: Optional[Literal["720p", "1080p", "4k"]] = None
    generate_audio: Optional[bool] = None
    negative_prompt: Optional[str] = None

    def to_single(self, image_url: str) -> VideoGenerationConfig:
        """Config of the per-child video-generation step."""
        data = self.model_dump(exclude={"images"})
        data["image_url"] = image_url
        return VideoGenerationConfig(**data)


class TextOverlayConfig(BaseModel):
    text: str
    position: Literal["top", "center", "bottom", "custom"] = "bottom"
    text_align: Literal["left", "center", "right"] = "center"
    custom_x: Optional[float] = Field(default=None, ge=0, le=100)
    custom_y: Optional[float] = Field(default=None, ge=0, le=100)
    font_size: int = Field(default=48, gt=0)
    font_color: str = "#FFFFFF"
    font_file: Optional[str] = None
    bg_color: Optional[str] = None
    padding_left: int = 0
    padding_right: int = 0
    words_per_line: int = 0
    start_time: Optional[float] = None
    duration: Optional[float] = None


class BgMusicConfig(BaseModel):
    track_url: str
    volume: int = Field(default=30, ge=0, le=100)
    fade_in: Optional[float] = None
    fade_out: Optional[float] = None
    # Steps to apply the music to inline; empty means "apply as a normal step"
    apply_to_steps: List[str] = Field(default_factory=list)
    audio_mode_per_step: Dict[str, AudioMode] = Field(default_factory=dict)
    audio_mode: Optional[AudioMode] = None

    def effective_audio_mode(self) -> AudioMode:
        """Mode used when the music runs as its own step."""
        if self.audio_mode:
            return self.audio_mode
        targets = self.apply_to_steps or list(self.audio_mode_per_step)
        if any(self.audio_mode_per_step.get(step_id) == "replace" for step_id in targets):
            return "replace"
        return "mix"

    def mode_for_step(self, step_id: str) -> AudioMode:
        """Mode used when the music is applied inline after step_id."""
        return self.audio_mode_per_step.get(step_id, "mix")


class AttachVideoConfig(BaseModel):
    position: Literal["before", "after"] = "after"
    video_url: Optional[str] = None
    source_step_id: Optional[str] = None


class LayerSource(BaseModel):
    type: Literal["url", "step-output"] = "url"
    url: Optional[str] = None
    step_id: Optional[str] = None


class ComposeLayer(BaseModel):
    id: str
    type: Literal["image", "video"] = "video"
    source: LayerSource
    # Position and size as fractions of the canvas
    x: float = 0.0
    y: float = 0.0
    width: float = Field(default=1.0, gt=0)
    height: float = Field(default=1.0, gt=0)
    z_index: int = 0
    fit: Literal["cover", "contain", "stretch"] = "cover"
    opacity: float = Field(default=1.0, ge=0, le=1)
    trim_start: Optional[float] = None
    trim_end: Optional[float] = None


class ComposeConfig(BaseModel):
    canvas_width: int = 720
    canvas_height: int = 1280
    background_color: str = "#000000"
    layers: List[ComposeLayer] = Field(default_factory=list)


class _StepBase(BaseModel):
    id: str
    enabled: bool = True

    @property
    def requires_input_video(self) -> bool:
        return True

    @property
    def is_async(self) -> bool:
        return False


class VideoGenerationStep(_StepBase):
    type: Literal["video-generation"] = "video-generation"
    config: VideoGenerationConfig

    @property
    def requires_input_video(self) -> bool:
        return self.config.mode == "motion-control"

    @property
    def is_async(self) -> bool:
        return True


class BatchVideoGenerationStep(_StepBase):
    type: Literal["batch-video-generation"] = "batch-video-generation"
    config: BatchVideoGenerationConfig

    @property
    def requires_input_video(self) -> bool:
        return self.config.mode == "motion-control"

    @property
    def is_async(self) -> bool:
        return True


class TextOverlayStep(_StepBase):
    type: Literal["text-overlay"] = "text-overlay"
    config: TextOverlayConfig


class BgMusicStep(_StepBase):
    type: Literal["bg-music"] = "bg-music"
    config: BgMusicConfig

    @property
    def applies_inline(self) -> bool:
        return bool(self.config.apply_to_steps)


class AttachVideoStep(_StepBase):
    type: Literal["attach-video"] = "attach-video"
    config: AttachVideoConfig


class ComposeStep(_StepBase):
    type: Literal["compose"] = "compose"
    config: ComposeConfig

    @property
    def requires_input_video(self) -> bool:
        # Layers bring their own inputs
        return False


PipelineStep = Annotated[
    Union[
        VideoGenerationStep,
        BatchVideoGenerationStep,
        TextOverlayStep,
        BgMusicStep,
        AttachVideoStep,
        ComposeStep,
    ],
    Field(discriminator="type"),
]


def enabled_steps(pipeline: List[PipelineStep]) -> List[PipelineStep]:
    """Ordered list of steps that actually run."""
    return [step for step in pipeline if step.enabled]
