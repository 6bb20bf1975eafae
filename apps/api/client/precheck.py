"""Pre-upload inspection and best-effort trimming of a local video file.

Nothing here raises to the caller: when the file cannot be inspected or cut,
the original path is returned with ``did_fallback=True`` so the upload still
goes ahead and the server normalizes from the untrimmed bytes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import ffmpeg

from client.types import MAX_FALLBACK_REASON_LENGTH, TrimMetadata, UploadSource
from services.transcode import probe_video

logger = logging.getLogger(__name__)

MAX_CLIP_SECONDS = 30.0
END_TOLERANCE_SEC = 0.05
THUMBNAIL_AT_SEC = 0.2


@dataclass(frozen=True)
class PreparedClip:
    path: Path
    trim: TrimMetadata
    trimmed: bool = False


def _reason(prefix: str, exc: Exception) -> str:
    stderr = getattr(exc, "stderr", None)
    detail = stderr.decode(errors="replace").strip()[-250:] if isinstance(stderr, bytes) and stderr else str(exc)
    return f"{prefix}: {detail}"[:MAX_FALLBACK_REASON_LENGTH]


def precheck_video(
    path,
    start_sec: float = 0.0,
    end_sec: Optional[float] = None,
    max_clip_seconds: float = MAX_CLIP_SECONDS,
) -> TrimMetadata:
    """Probe ``path`` and clamp the requested window to the clip cap and the source length."""
    try:
        probe = probe_video(str(path))
    except Exception as exc:
        logger.warning("Precheck probe failed for %s: %s", path, exc)
        return TrimMetadata(did_fallback=True, fallback_reason=_reason("probe_failed", exc))

    duration = probe.duration_sec
    if duration is None:
        return TrimMetadata(
            width=probe.width,
            height=probe.height,
            did_fallback=True,
            fallback_reason="duration_unknown",
        )

    start = min(max(float(start_sec or 0.0), 0.0), max(duration - 0.1, 0.0))
    cap = min(start + max_clip_seconds, duration)
    end = cap if end_sec is None else min(max(float(end_sec), start), cap)
    if end <= start:
        end = cap
    return TrimMetadata(
        start_sec=start,
        end_sec=end,
        width=probe.width,
        height=probe.height,
        original_duration_sec=duration,
    )


def _needs_trim(trim: TrimMetadata) -> bool:
    if trim.start_sec > 0:
        return True
    return trim.end_sec is not None and trim.end_sec < (trim.original_duration_sec or 0.0) - END_TOLERANCE_SEC


def _trim_copy(source: Path, output: Path, start_sec: float, duration_sec: float) -> None:
    input_kwargs = {"ss": start_sec} if start_sec > 0 else {}
    (
        ffmpeg
        .input(str(source), **input_kwargs)
        .output(str(output), t=duration_sec, c="copy", avoid_negative_ts="make_zero", movflags="+faststart")
        .overwrite_output()
        .run(quiet=True)
    )
    if not output.exists() or output.stat().st_size == 0:
        raise RuntimeError("trimmed file was not written")


def prepare_clip(
    path,
    start_sec: float = 0.0,
    end_sec: Optional[float] = None,
    *,
    max_clip_seconds: float = MAX_CLIP_SECONDS,
    output_dir=None,
) -> PreparedClip:
    """Stream-copy the selected window into a new file when the source is longer than it."""
    source = Path(path)
    trim = precheck_video(source, start_sec, end_sec, max_clip_seconds)
    if trim.did_fallback or not _needs_trim(trim):
        return PreparedClip(path=source, trim=trim)

    target_dir = Path(output_dir) if output_dir else source.parent
    output = target_dir / f"{source.stem}.clip{source.suffix or '.mp4'}"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        _trim_copy(source, output, trim.start_sec, trim.end_sec - trim.start_sec)
    except Exception as exc:
        logger.warning("Stream-copy trim failed for %s; uploading the original: %s", source, exc)
        output.unlink(missing_ok=True)
        return PreparedClip(
            path=source,
            trim=TrimMetadata(
                start_sec=trim.start_sec,
                end_sec=trim.end_sec,
                width=trim.width,
                height=trim.height,
                original_duration_sec=trim.original_duration_sec,
                did_fallback=True,
                fallback_reason=_reason("trim_failed", exc),
            ),
        )
    logger.info("Trimmed %s to %.2fs-%.2fs -> %s", source.name, trim.start_sec, trim.end_sec, output)
    return PreparedClip(path=output, trim=trim, trimmed=True)


def _grab_frame(path: Path, at_sec: float) -> bytes:
    out, _ = (
        ffmpeg
        .input(str(path), ss=at_sec)
        .output("pipe:", vframes=1, format="image2", vcodec="mjpeg", **{"q:v": 4})
        .run(capture_stdout=True, quiet=True)
    )
    if not out:
        raise RuntimeError("no frame captured")
    return out


async def capture_thumbnail(source: UploadSource) -> Optional[bytes]:
    """JPEG frame near the start of the clip; usable as the queue's thumbnailer."""
    try:
        probe = await asyncio.to_thread(probe_video, str(source.path))
        duration = probe.duration_sec or 1.0
        return await asyncio.to_thread(_grab_frame, source.path, max(min(THUMBNAIL_AT_SEC, duration - 0.1), 0.0))
    except Exception as exc:
        logger.warning("Thumbnail capture failed for %s: %s", source.name, exc)
        return None
