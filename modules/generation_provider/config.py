"""
Generation provider configuration.

Replicate models used for each video-generation mode, and the mapping from
step configuration to model input.
"""

import os
from typing import Any, Dict, Optional

from shared.models.steps import VideoGenerationConfig

MOTION_CONTROL_MODEL = os.getenv("MOTION_CONTROL_MODEL", "kwaivgi/kling-v2.6-motion-control")
SUBTLE_ANIMATION_MODEL = os.getenv("SUBTLE_ANIMATION_MODEL", "google/veo-3.1")

DEFAULT_MOTION_PROMPT = "The character follows the motion of the reference video naturally."
DEFAULT_ANIMATION_PROMPT = "Subtle natural movement, gentle breathing, soft blinking, static camera."

MODEL_CONFIGS: Dict[str, Dict[str, Any]] = {
    "motion-control": {
        "replicate_string": MOTION_CONTROL_MODEL,
        "label": "Motion Control",
        "needs_video": True,
        "default_prompt": DEFAULT_MOTION_PROMPT,
        "parameter_names": {
            "image": "image",
            "video": "video",
            "prompt": "prompt",
            "generate_audio": "keep_original_sound",
        },
        "defaults": {
            "character_orientation": "video",
            "keep_original_sound": True,
        },
    },
    "subtle-animation": {
        "replicate_string": SUBTLE_ANIMATION_MODEL,
        "label": "Subtle Animation",
        "needs_video": False,
        "default_prompt": DEFAULT_ANIMATION_PROMPT,
        "parameter_names": {
            "image": "image",
            "prompt": "prompt",
            "aspect_ratio": "aspect_ratio",
            "duration": "duration",
            "resolution": "resolution",
            "generate_audio": "generate_audio",
            "negative_prompt": "negative_prompt",
        },
        "defaults": {
            "aspect_ratio": "9:16",
            "duration": 8,
            "resolution": "720p",
            "generate_audio": True,
        },
    },
}


def get_model_config(mode: str) -> Dict[str, Any]:
    """Config entry for a video-generation mode."""
    try:
        return MODEL_CONFIGS[mode]
    except KeyError:
        raise ValueError(f"Unknown video generation mode: {mode}") from None


def _parse_duration(value: Optional[str]) -> Optional[int]:
    # Accepts "8s" or "8"
    if value is None:
        return None
    try:
        return int(str(value).rstrip("s"))
    except ValueError:
        return None


def build_model_input(
    config: VideoGenerationConfig,
    image_url: str,
    video_url: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build the Replicate input dict for a video-generation step.

    Args:
        config: Step configuration
        image_url: Reference image (public URL)
        video_url: Driving video, required for motion control

    Returns:
        Model input with only the parameters the model understands
    """
    model_config = get_model_config(config.mode)
    names = model_config["parameter_names"]
    model_input: Dict[str, Any] = dict(model_config["defaults"])

    model_input[names["image"]] = image_url
    model_input[names["prompt"]] = config.prompt or model_config["default_prompt"]

    if model_config["needs_video"]:
        if not video_url:
            raise ValueError("Motion control requires an input video")
        model_input[names["video"]] = video_url

    optional = {
        "aspect_ratio": config.aspect_ratio,
        "duration": _parse_duration(config.duration),
        "resolution": config.resolution,
        "generate_audio": config.generate_audio,
        "negative_prompt": config.negative_prompt,
    }
    for key, value in optional.items():
        if value is not None and key in names:
            model_input[names[key]] = value

    return model_input
