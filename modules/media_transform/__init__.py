"""
Media Transform module.

Local ffmpeg transforms applied by synchronous pipeline steps: text overlay,
audio mixing, concatenation, trimming and multi-layer composition.
"""

from modules.media_transform.transforms import TRANSFORM_KINDS, apply
from modules.media_transform.utils import probe_duration

__all__ = ["apply", "probe_duration", "TRANSFORM_KINDS"]
