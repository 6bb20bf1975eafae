"""Normalization worker: download, trim/scale/encode, upload, report."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from config import Settings, settings as default_settings
from services.media_paths import normalized_video_key, worker_thumbnail_key
from services.object_store import ObjectStore
from services.transcode import extract_thumbnail, normalize_clip, probe_video_quietly
from services.video_state import WorkerResult, sanitize_error

logger = logging.getLogger(__name__)

MAX_TRIM_START_SEC = 3 * 60 * 60
DOWNLOAD_CHUNK_BYTES = 1024 * 1024


class NormalizationError(RuntimeError):
    """Raised for malformed worker payloads."""


@dataclass
class NormalizationJob:
    """Payload a worker needs; travels over HTTP/broker as camelCase JSON."""

    video_id: str
    original_url: str
    trim_start_sec: float = 0.0
    processed_duration_sec: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NormalizationJob":
        video_id = str(payload.get("videoId") or payload.get("video_id") or "").strip()
        original_url = str(payload.get("originalUrl") or payload.get("original_url") or "").strip()
        if not video_id or not original_url:
            raise NormalizationError("videoId & originalUrl required")

        try:
            start = float(payload.get("trimStartSec", payload.get("trim_start_sec")) or 0.0)
        except (TypeError, ValueError):
            start = 0.0
        if start < 0 or start > MAX_TRIM_START_SEC:
            start = 0.0

        try:
            raw_duration = payload.get("processedDurationSec", payload.get("processed_duration_sec"))
            duration = float(raw_duration) if raw_duration is not None else None
        except (TypeError, ValueError):
            duration = None
        return cls(video_id=video_id, original_url=original_url, trim_start_sec=start, processed_duration_sec=duration)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "videoId": self.video_id,
            "originalUrl": self.original_url,
            "trimStartSec": self.trim_start_sec,
            "processedDurationSec": self.processed_duration_sec,
        }


async def download_original(url: str, destination: Path, timeout: float = 120.0) -> Path:
    """Stream the original object to a local file."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        async with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise RuntimeError(f"download_failed: status={response.status_code}")
            with destination.open("wb") as out:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                    out.write(chunk)
    if not destination.exists() or destination.stat().st_size == 0:
        raise RuntimeError("input_file_missing_or_empty")
    return destination


def _target_length(job: NormalizationJob, max_clip_seconds: float) -> float:
    if job.processed_duration_sec:
        return min(max_clip_seconds, max(0.1, job.processed_duration_sec))
    return max_clip_seconds


async def _upload_thumbnail(job: NormalizationJob, source: Path, thumb_path: Path, store: ObjectStore):
    """Thumbnail failures never fail the normalization."""
    try:
        await asyncio.to_thread(extract_thumbnail, source, thumb_path, 1.0)
        stored = await store.put(worker_thumbnail_key(job.video_id), thumb_path, content_type="image/jpeg")
        return stored
    except Exception as exc:
        logger.warning("Thumbnail generation failed for video %s: %s", job.video_id, exc)
        return None


async def run_normalization(
    job: NormalizationJob,
    store: ObjectStore,
    config: Settings = default_settings,
) -> WorkerResult:
    """Run the full worker chain and report the outcome; never raises."""
    started = time.monotonic()
    temp_root = Path(config.WORKER_TMP_DIR)
    temp_base = temp_root / f"{job.video_id}-{uuid.uuid4().hex}"
    in_file = Path(f"{temp_base}-in.mp4")
    out_file = Path(f"{temp_base}-out.mp4")
    thumb_file = Path(f"{temp_base}-thumb.jpg")

    try:
        temp_root.mkdir(parents=True, exist_ok=True)
        await download_original(job.original_url, in_file)

        original = await asyncio.to_thread(probe_video_quietly, str(in_file))
        seek = job.trim_start_sec
        if original.duration_sec and seek > original.duration_sec - 0.5:
            seek = max(0.0, original.duration_sec - 0.5)

        vf = await asyncio.to_thread(
            normalize_clip,
            in_file,
            out_file,
            seek_sec=seek,
            max_duration_sec=_target_length(job, config.MAX_CLIP_SECONDS),
            max_width=config.TARGET_MAX_WIDTH,
            max_height=config.TARGET_MAX_HEIGHT,
        )
        processed = await asyncio.to_thread(probe_video_quietly, str(out_file))

        thumbnail = await _upload_thumbnail(job, out_file, thumb_file, store)
        normalized = await store.put(normalized_video_key(job.video_id), out_file, content_type="video/mp4")

        logger.info(
            "Normalized video %s in %.0fms (seek=%.2fs vf=%s %sx%s -> %sx%s)",
            job.video_id,
            (time.monotonic() - started) * 1000,
            seek,
            vf,
            original.width,
            original.height,
            processed.width,
            processed.height,
        )
        return WorkerResult(
            video_id=job.video_id,
            success=True,
            ready_url=normalized.url,
            normalized_key=normalized.key,
            thumbnail_url=thumbnail.url if thumbnail else None,
            thumbnail_key=thumbnail.key if thumbnail else None,
            processed_duration_sec=processed.duration_sec,
            processed_width=processed.width,
            processed_height=processed.height,
            original_duration_sec=original.duration_sec,
            original_width=original.width,
            original_height=original.height,
        )
    except Exception as exc:
        logger.exception("Normalization failed for video %s: %s", job.video_id, exc)
        return WorkerResult(video_id=job.video_id, success=False, error=sanitize_error(exc))
    finally:
        for path in (in_file, out_file, thumb_file):
            try:
                path.unlink(missing_ok=True)
            except Exception:
                logger.warning("Could not cleanup temporary worker file %s", path)
