"""
FFmpeg-backed media transforms.

Each transform has a pure ``build_*_command`` function and an
async wrapper that runs it. Inputs and outputs are local file paths.
"""

import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from modules.media_transform.utils import (
    has_audio_stream,
    probe_dimensions,
    probe_duration,
    run_ffmpeg_command,
)
from shared.errors import MediaTransformError, RetryableError
from shared.models.steps import ComposeConfig, TextOverlayConfig

VIDEO_CODEC_ARGS = ["-c:v", "libx264", "-preset", "fast", "-pix_fmt", "yuv420p"]
AUDIO_CODEC_ARGS = ["-c:a", "aac", "-b:a", "192k"]
REFERENCE_WIDTH = 720
DEFAULT_SIDE_PADDING = 90


def wrap_text(text: str, max_chars: int) -> str:
    """Greedy word wrap to at most max_chars per line."""
    lines: List[str] = []
    for paragraph in text.split("\n"):
        current = ""
        for word in paragraph.split():
            candidate = f"{current} {word}".strip()
            if current and len(candidate) > max_chars:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
    return "\n".join(lines)


def wrap_by_word_count(text: str, words_per_line: int) -> str:
    words = text.split()
    return "\n".join(
        " ".join(words[i:i + words_per_line]) for i in range(0, len(words), words_per_line)
    )


def layout_text(config: TextOverlayConfig) -> str:
    """Apply the configured line wrapping to the overlay text."""
    if config.words_per_line > 0:
        return wrap_by_word_count(config.text, config.words_per_line)
    left = config.padding_left or DEFAULT_SIDE_PADDING
    right = config.padding_right or DEFAULT_SIDE_PADDING
    char_width = config.font_size * 0.55
    max_chars = max(5, int((REFERENCE_WIDTH - left - right) / char_width))
    return wrap_text(config.text, max_chars)


def _ffmpeg_color(color: str) -> str:
    # "#RRGGBB" -> "0xRRGGBB"
    return f"0x{color.lstrip('#')}" if color.startswith("#") else color


def build_drawtext_filter(config: TextOverlayConfig, textfile: str) -> str:
    """drawtext filter for an overlay whose (wrapped) text lives in textfile."""
    left = config.padding_left or DEFAULT_SIDE_PADDING
    right = config.padding_right or DEFAULT_SIDE_PADDING

    if config.position == "custom" and config.custom_x is not None:
        x = f"w*{config.custom_x / 100:.4f}-text_w/2"
    elif config.text_align == "left":
        x = str(left)
    elif config.text_align == "right":
        x = f"w-text_w-{right}"
    else:
        x = "(w-text_w)/2"

    if config.position == "top":
        y = "h*0.10"
    elif config.position == "center":
        y = "(h-text_h)/2"
    elif config.position == "custom" and config.custom_y is not None:
        y = f"h*{config.custom_y / 100:.4f}-text_h/2"
    else:
        y = "h*0.85-text_h"

    parts = [
        f"textfile='{textfile}'",
        f"fontsize={config.font_size}",
        f"fontcolor={_ffmpeg_color(config.font_color)}",
        f"x={x}",
        f"y={y}",
        f"line_spacing={int(config.font_size * 0.3)}",
    ]
    if config.font_file:
        parts.append(f"fontfile='{config.font_file}'")
    if config.bg_color:
        parts.extend(["box=1", f"boxcolor={_ffmpeg_color(config.bg_color)}", "boxborderw=12"])
    else:
        parts.extend(["borderw=2", "bordercolor=black"])
    if config.start_time is not None:
        end = f"{config.start_time + config.duration}" if config.duration else "1e9"
        parts.append(f"enable='between(t,{config.start_time},{end})'")
    return "drawtext=" + ":".join(parts)


def build_text_overlay_command(input_path: str, output_path: str, config: TextOverlayConfig, textfile: str) -> List[str]:
    return [
        "ffmpeg", "-y", "-i", input_path,
        "-vf", build_drawtext_filter(config, textfile),
        *VIDEO_CODEC_ARGS, "-c:a", "copy",
        output_path,
    ]


async def text_overlay(input_path: str, output_path: str, config: TextOverlayConfig, job_id: Optional[str] = None) -> str:
    with tempfile.NamedTemporaryFile("w", suffix=".txt", delete=False, encoding="utf-8") as handle:
        handle.write(layout_text(config))
        textfile = handle.name
    try:
        await run_ffmpeg_command(build_text_overlay_command(input_path, output_path, config, textfile), job_id)
    finally:
        Path(textfile).unlink(missing_ok=True)
    return output_path


def build_mix_audio_command(
    video_path: str,
    audio_path: str,
    output_path: str,
    volume: int,
    mode: str,
    fade_in: Optional[float] = None,
    fade_out: Optional[float] = None,
    video_duration: float = 0.0,
    video_has_audio: bool = True
) -> List[str]:
    """
    Put a music track under a video.

    replace: the music becomes the only audio track.
    mix: the music is mixed with the video's own audio (falls back to
    replace when the video is silent).
    """
    music = f"[1:a]volume={volume / 100:.2f}"
    if fade_in:
        music += f",afade=t=in:st=0:d={fade_in}"
    if fade_out and video_duration > 0:
        music += f",afade=t=out:st={max(0.0, video_duration - fade_out):.2f}:d={fade_out}"

    if mode == "mix" and video_has_audio:
        filter_complex = f"{music}[music];[0:a][music]amix=inputs=2:duration=first:dropout_transition=0[aout]"
    else:
        filter_complex = f"{music}[aout]"

    return [
        "ffmpeg", "-y", "-i", video_path, "-stream_loop", "-1", "-i", audio_path,
        "-filter_complex", filter_complex,
        "-map", "0:v", "-map", "[aout]",
        "-c:v", "copy", *AUDIO_CODEC_ARGS, "-shortest",
        output_path,
    ]


async def mix_audio(
    video_path: str,
    audio_path: str,
    output_path: str,
    volume: int = 30,
    mode: str = "mix",
    fade_in: Optional[float] = None,
    fade_out: Optional[float] = None,
    job_id: Optional[str] = None
) -> str:
    cmd = build_mix_audio_command(
        video_path, audio_path, output_path, volume, mode, fade_in, fade_out,
        video_duration=probe_duration(video_path) if fade_out else 0.0,
        video_has_audio=has_audio_stream(video_path),
    )
    await run_ffmpeg_command(cmd, job_id)
    return output_path


def build_concat_command(
    video_paths: Sequence[str],
    output_path: str,
    width: int,
    height: int,
    audio_flags: Sequence[bool],
    durations: Sequence[float]
) -> List[str]:
    """Scale/pad every input to width x height and concatenate with audio.

    Inputs without an audio track get a silent track of their own length so
    the concat filter always sees one audio stream per segment.
    """
    inputs: List[str] = []
    for path in video_paths:
        inputs += ["-i", path]

    filters: List[str] = []
    concat_inputs = ""
    for i, (has_audio, duration) in enumerate(zip(audio_flags, durations)):
        filters.append(
            f"[{i}:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps=30[v{i}]"
        )
        if has_audio:
            filters.append(f"[{i}:a]aresample=44100,aformat=channel_layouts=stereo[a{i}]")
        else:
            filters.append(f"anullsrc=r=44100:cl=stereo,atrim=duration={duration:.3f}[a{i}]")
        concat_inputs += f"[v{i}][a{i}]"
    filters.append(f"{concat_inputs}concat=n={len(video_paths)}:v=1:a=1[vout][aout]")

    return [
        "ffmpeg", "-y", *inputs,
        "-filter_complex", ";".join(filters),
        "-map", "[vout]", "-map", "[aout]",
        *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS,
        output_path,
    ]


async def concat(video_paths: Sequence[str], output_path: str, job_id: Optional[str] = None) -> str:
    width, height = probe_dimensions(video_paths[0])
    cmd = build_concat_command(
        video_paths, output_path, width, height,
        [has_audio_stream(path) for path in video_paths],
        [probe_duration(path, default=5.0) for path in video_paths]
    )
    await run_ffmpeg_command(cmd, job_id)
    return output_path


async def strip_audio(input_path: str, output_path: str, job_id: Optional[str] = None) -> str:
    await run_ffmpeg_command(["ffmpeg", "-y", "-i", input_path, "-an", "-c:v", "copy", output_path], job_id)
    return output_path


async def trim(input_path: str, output_path: str, max_seconds: float, job_id: Optional[str] = None) -> str:
    await run_ffmpeg_command(
        ["ffmpeg", "-y", "-i", input_path, "-t", f"{max_seconds}", *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS, output_path],
        job_id
    )
    return output_path


def build_compose_command(
    layer_paths: Dict[str, str],
    config: ComposeConfig,
    output_path: str,
    durations: Dict[str, float],
    audio_layer_id: Optional[str] = None
) -> List[str]:
    """
    Overlay z-ordered image/video layers on a solid background canvas.

    Args:
        layer_paths: layer id -> local file
        config: Canvas and layers
        output_path: Output file
        durations: layer id -> source duration (video layers)
        audio_layer_id: Video layer whose audio is kept (silence if None)
    """
    layers = sorted(
        (layer for layer in config.layers if layer.id in layer_paths),
        key=lambda layer: layer.z_index
    )
    canvas_w, canvas_h = config.canvas_width, config.canvas_height
    bg = _ffmpeg_color(config.background_color)

    total = 5.0
    for layer in layers:
        if layer.type == "video":
            full = durations.get(layer.id, 0.0)
            start = layer.trim_start or 0.0
            end = layer.trim_end if layer.trim_end and layer.trim_end > start else full
            total = max(total, end - start)

    inputs: List[str] = []
    input_index: Dict[str, int] = {}
    for layer in layers:
        if layer.type == "image":
            inputs += ["-loop", "1", "-t", f"{total}", "-i", layer_paths[layer.id]]
        else:
            if layer.trim_start:
                inputs += ["-ss", f"{layer.trim_start}"]
            if layer.trim_end and layer.trim_end > (layer.trim_start or 0):
                inputs += ["-t", f"{layer.trim_end - (layer.trim_start or 0)}"]
            inputs += ["-i", layer_paths[layer.id]]
        input_index[layer.id] = len(input_index)

    filters = [f"color=c={bg}:s={canvas_w}x{canvas_h}:d={total}:r=30[bg]"]
    previous = "bg"
    for i, layer in enumerate(layers):
        idx = input_index[layer.id]
        w = round(layer.width * canvas_w)
        h = round(layer.height * canvas_h)
        x = round(layer.x * canvas_w)
        y = round(layer.y * canvas_h)
        if layer.fit == "stretch":
            scaled = f"[{idx}:v]scale={w}:{h}"
        elif layer.fit == "contain":
            scaled = (f"[{idx}:v]scale={w}:{h}:force_original_aspect_ratio=decrease,"
                      f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color={bg}")
        else:
            scaled = f"[{idx}:v]scale={w}:{h}:force_original_aspect_ratio=increase,crop={w}:{h}"
        scaled += ",format=yuva420p"
        if layer.opacity < 1:
            scaled += f",colorchannelmixer=aa={layer.opacity}"
        filters.append(f"{scaled}[s{i}]")
        out = "vout" if i == len(layers) - 1 else f"v{i}"
        filters.append(f"[{previous}][s{i}]overlay={x}:{y}:shortest=0[{out}]")
        previous = out

    if audio_layer_id is not None and audio_layer_id in input_index:
        audio_map = ["-map", f"{input_index[audio_layer_id]}:a"]
    else:
        filters.append(f"anullsrc=r=44100:cl=stereo,atrim=duration={total}[aout]")
        audio_map = ["-map", "[aout]"]

    return [
        "ffmpeg", "-y", *inputs,
        "-filter_complex", ";".join(filters),
        "-map", "[vout]", *audio_map,
        *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS, "-t", f"{total}",
        output_path,
    ]


async def compose(layer_paths: Dict[str, str], config: ComposeConfig, output_path: str, job_id: Optional[str] = None) -> str:
    durations: Dict[str, float] = {}
    audio_layer_id: Optional[str] = None
    for layer in sorted(config.layers, key=lambda layer: layer.z_index):
        path = layer_paths.get(layer.id)
        if not path or layer.type != "video":
            continue
        durations[layer.id] = probe_duration(path, default=10.0)
        if audio_layer_id is None and has_audio_stream(path):
            audio_layer_id = layer.id
    cmd = build_compose_command(layer_paths, config, output_path, durations, audio_layer_id)
    await run_ffmpeg_command(cmd, job_id)
    return output_path


TRANSFORM_KINDS = ("text_overlay", "mix_audio", "concat", "strip_audio", "trim", "compose")


def _output_path(job_id: Optional[str], kind: str) -> str:
    directory = Path(tempfile.gettempdir()) / "pipeline" / (job_id or "adhoc")
    directory.mkdir(parents=True, exist_ok=True)
    return str(directory / f"{kind}-{uuid.uuid4().hex[:8]}.mp4")


async def apply(
    kind: str,
    inputs: Union[Sequence[str], Dict[str, str]],
    config: Any = None,
    job_id: Optional[str] = None,
    output_path: Optional[str] = None
) -> str:
    """
    Apply a named transform to local input files.

    Args:
        kind: One of TRANSFORM_KINDS
        inputs: Input paths. For compose, a mapping of layer id -> path
        config: TextOverlayConfig / ComposeConfig, or a dict of options
            (mix_audio: volume, mode, fade_in, fade_out; trim: max_seconds)
        job_id: Job ID for logging and temp file placement
        output_path: Where to write the result (a temp file if omitted)

    Returns:
        Path of the output file

    Raises:
        MediaTransformError: Unknown kind, bad inputs, or ffmpeg failure
    """
    if kind not in TRANSFORM_KINDS:
        raise MediaTransformError(f"Unknown media transform: {kind}", job_id=job_id)
    if not inputs:
        raise MediaTransformError(f"{kind} needs at least one input", job_id=job_id)
    output_path = output_path or _output_path(job_id, kind)
    options: Dict[str, Any] = config if isinstance(config, dict) else {}

    try:
        if kind == "text_overlay":
            return await text_overlay(inputs[0], output_path, config, job_id)
        if kind == "mix_audio":
            if len(inputs) < 2:
                raise MediaTransformError("mix_audio needs a video and an audio input", job_id=job_id)
            return await mix_audio(inputs[0], inputs[1], output_path, job_id=job_id, **options)
        if kind == "concat":
            return await concat(list(inputs), output_path, job_id)
        if kind == "strip_audio":
            return await strip_audio(inputs[0], output_path, job_id)
        if kind == "trim":
            return await trim(inputs[0], output_path, options["max_seconds"], job_id)
        return await compose(dict(inputs), config, output_path, job_id)
    except RetryableError as e:
        raise MediaTransformError(f"{kind} failed: {e}", job_id=job_id) from e
