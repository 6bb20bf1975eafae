"""ffmpeg helpers for probing, normalizing and thumbnailing captain videos."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import ffmpeg

logger = logging.getLogger(__name__)

# Tried in order until one succeeds; the last entry leaves the frame size untouched.
SCALE_FILTER_ATTEMPTS: Sequence[Optional[str]] = (
    "scale={w}:{h}:force_original_aspect_ratio=decrease",
    "scale=-2:{h}:force_original_aspect_ratio=decrease",
    "scale={w}:-2:force_original_aspect_ratio=decrease",
    None,
)


class TranscodeError(RuntimeError):
    """Raised when every ffmpeg attempt failed."""


@dataclass
class VideoProbe:
    duration_sec: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


def _positive_float(value) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _positive_int(value) -> Optional[int]:
    parsed = _positive_float(value)
    return int(parsed) if parsed else None


def probe_video(source: str) -> VideoProbe:
    """Probe duration and dimensions of a local path or URL; raises on failure."""
    probe = ffmpeg.probe(source)
    video_stream = next(
        (stream for stream in probe.get("streams", []) if stream.get("codec_type") == "video"),
        {},
    )
    duration = _positive_float(probe.get("format", {}).get("duration"))
    if duration is None:
        duration = _positive_float(video_stream.get("duration"))
    return VideoProbe(
        duration_sec=duration,
        width=_positive_int(video_stream.get("width")),
        height=_positive_int(video_stream.get("height")),
    )


def probe_video_quietly(source: str) -> VideoProbe:
    """Best-effort probe; returns an empty probe when ffprobe fails."""
    try:
        return probe_video(source)
    except Exception as exc:
        stderr = getattr(exc, "stderr", None)
        detail = stderr.decode(errors="replace") if isinstance(stderr, bytes) else str(exc)
        logger.warning("Could not probe video %s: %s", source, detail[:500])
        return VideoProbe()


def _stderr_text(exc: Exception) -> str:
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes) and stderr:
        return stderr.decode(errors="replace")[-1000:]
    return str(exc)


def normalize_clip(
    input_path: Path,
    output_path: Path,
    *,
    seek_sec: float,
    max_duration_sec: float,
    max_width: int,
    max_height: int,
) -> str:
    """Transcode to H.264/AAC with faststart, trying each scale filter in turn.

    Returns the filter that succeeded (``"none"`` when no scaling was applied).
    """
    last_error: Optional[str] = None
    for attempt, template in enumerate(SCALE_FILTER_ATTEMPTS, start=1):
        vf = template.format(w=max_width, h=max_height) if template else None
        input_kwargs = {"ss": seek_sec} if seek_sec > 0 else {}
        output_kwargs = {
            "t": max_duration_sec,
            "vcodec": "libx264",
            "preset": "veryfast",
            "crf": 26,
            "acodec": "aac",
            "movflags": "+faststart",
        }
        if vf:
            output_kwargs["vf"] = vf
        try:
            (
                ffmpeg
                .input(str(input_path), **input_kwargs)
                .output(str(output_path), **output_kwargs)
                .overwrite_output()
                .run(quiet=True)
            )
            logger.info("Transcode attempt %s succeeded (vf=%s)", attempt, vf)
            return vf or "none"
        except ffmpeg.Error as exc:
            last_error = _stderr_text(exc)
            logger.warning("Transcode attempt %s failed (vf=%s): %s", attempt, vf, last_error[-300:])
            output_path.unlink(missing_ok=True)
    raise TranscodeError(f"transcode_failed_all_attempts: {last_error or 'unknown error'}")


def extract_thumbnail(input_path: Path, output_path: Path, at_sec: float = 1.0) -> Path:
    """Grab a single JPEG frame; raises ``ffmpeg.Error`` on failure."""
    (
        ffmpeg
        .input(str(input_path), ss=max(at_sec, 0))
        .output(str(output_path), vframes=1, **{"q:v": 2})
        .overwrite_output()
        .run(quiet=True)
    )
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise TranscodeError("thumbnail_not_written")
    return output_path
