"""Process-state transitions for captain video records.

Every writer of ``CaptainVideo.process_status`` goes through this module so the
ingress endpoint, dispatcher, worker and callback receiver agree on one state
machine::

    queued -> processing -> ready | failed

``ready`` and ``failed`` only move again through an explicit re-enqueue. A
duplicate result for a finalized record is merged, never re-applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.captain_video import CaptainVideo

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
PROCESSING_TIMEOUT_ERROR = "processing_timeout"


def sanitize_error(message: Any, default: str = "normalize_failed") -> str:
    text = str(message or "").strip() or default
    text = "".join(ch if ch.isprintable() else " " for ch in text)
    return text[:MAX_ERROR_LENGTH]


def _pick(payload: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    parsed = _as_float(value)
    return int(parsed) if parsed is not None else None


@dataclass
class WorkerResult:
    """Normalized view of a worker/broker result payload."""

    video_id: Optional[str] = None
    success: Optional[bool] = None
    ready_url: Optional[str] = None
    normalized_key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    thumbnail_key: Optional[str] = None
    error: Optional[str] = None
    processed_duration_sec: Optional[float] = None
    processed_width: Optional[int] = None
    processed_height: Optional[int] = None
    original_duration_sec: Optional[float] = None
    original_width: Optional[int] = None
    original_height: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WorkerResult":
        """Accept camelCase or snake_case keys; ``success`` or ``ok`` as the outcome flag."""
        flag = _pick(payload, "success", "ok")
        error = _pick(payload, "message", "error") if flag is not True else None
        raw_id = _pick(payload, "videoId", "video_id")
        return cls(
            video_id=(str(raw_id).strip() or None) if raw_id is not None else None,
            success=bool(flag) if isinstance(flag, bool) else None,
            ready_url=_pick(payload, "readyUrl", "ready_url"),
            normalized_key=_pick(payload, "normalizedBlobKey", "normalized_blob_key", "normalizedKey"),
            thumbnail_url=_pick(payload, "thumbnailUrl", "thumbnail_url"),
            thumbnail_key=_pick(payload, "thumbnailBlobKey", "thumbnail_blob_key", "thumbnailKey"),
            error=str(error) if error is not None else None,
            processed_duration_sec=_as_float(_pick(payload, "processedDurationSec", "processed_duration_sec")),
            processed_width=_as_int(_pick(payload, "processedWidth", "processed_width")),
            processed_height=_as_int(_pick(payload, "processedHeight", "processed_height")),
            original_duration_sec=_as_float(_pick(payload, "originalDurationSec", "original_duration_sec")),
            original_width=_as_int(_pick(payload, "originalWidth", "original_width")),
            original_height=_as_int(_pick(payload, "originalHeight", "original_height")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "videoId": self.video_id,
            "success": self.success,
            "readyUrl": self.ready_url,
            "normalizedBlobKey": self.normalized_key,
            "thumbnailUrl": self.thumbnail_url,
            "thumbnailBlobKey": self.thumbnail_key,
            "error": None if self.success else self.error,
            "message": None if self.success else self.error,
            "processedDurationSec": self.processed_duration_sec,
            "processedWidth": self.processed_width,
            "processedHeight": self.processed_height,
            "originalDurationSec": self.original_duration_sec,
            "originalWidth": self.original_width,
            "originalHeight": self.original_height,
        }


@dataclass
class ApplyOutcome:
    video: CaptainVideo
    applied: bool
    idempotent: bool = False


async def get_video(db: AsyncSession, video_id: str) -> Optional[CaptainVideo]:
    result = await db.execute(select(CaptainVideo).where(CaptainVideo.id == video_id))
    return result.scalar_one_or_none()


async def claim_for_processing(db: AsyncSession, video_id: str) -> bool:
    """Atomically move ``queued -> processing``; False when another caller won."""
    result = await db.execute(
        update(CaptainVideo)
        .where(CaptainVideo.id == video_id, CaptainVideo.process_status == "queued")
        .values(
            process_status="processing",
            processing_started_at=datetime.now(timezone.utc),
            dispatch_attempts=CaptainVideo.dispatch_attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def revert_to_queued(db: AsyncSession, video_id: str, error: Any) -> None:
    """Hand-off failed before a worker started; leave it eligible for re-dispatch."""
    await db.execute(
        update(CaptainVideo)
        .where(CaptainVideo.id == video_id, CaptainVideo.process_status == "processing")
        .values(
            process_status="queued",
            processing_started_at=None,
            last_dispatch_error=sanitize_error(error, "dispatch_failed"),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def requeue_failed(db: AsyncSession, video_id: str) -> bool:
    """Explicit re-enqueue of a ``failed`` record; False when it was not failed."""
    result = await db.execute(
        update(CaptainVideo)
        .where(CaptainVideo.id == video_id, CaptainVideo.process_status == "failed")
        .values(
            process_status="queued",
            error_message=None,
            last_dispatch_error=None,
            processing_started_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


def mark_ready(video: CaptainVideo, result: WorkerResult) -> None:
    video.process_status = "ready"
    if result.ready_url:
        video.ready_720p_url = result.ready_url
        video.normalized_blob_key = result.normalized_key
    else:
        video.ready_720p_url = video.original_url
        video.normalized_blob_key = video.blob_key
    if result.thumbnail_url:
        video.thumbnail_url = result.thumbnail_url
        video.thumbnail_blob_key = result.thumbnail_key
    _merge_metadata(video, result)
    video.error_message = None
    video.last_dispatch_error = None
    video.processing_started_at = None


def mark_failed(video: CaptainVideo, error: Any) -> None:
    video.process_status = "failed"
    video.error_message = sanitize_error(error)
    video.ready_720p_url = None
    video.normalized_blob_key = None
    video.processing_started_at = None


def _merge_metadata(video: CaptainVideo, result: WorkerResult) -> None:
    for field in (
        "processed_duration_sec",
        "processed_width",
        "processed_height",
        "original_duration_sec",
        "original_width",
        "original_height",
    ):
        value = getattr(result, field)
        if value is not None and getattr(video, field) is None:
            setattr(video, field, value)


def _merge_missing_outputs(video: CaptainVideo, result: WorkerResult) -> bool:
    changed = False
    if not video.thumbnail_url and result.thumbnail_url:
        video.thumbnail_url = result.thumbnail_url
        video.thumbnail_blob_key = result.thumbnail_key
        changed = True
    if not video.ready_720p_url:
        video.ready_720p_url = result.ready_url or video.original_url
        video.normalized_blob_key = result.normalized_key if result.ready_url else video.blob_key
        changed = True
    before = (video.processed_duration_sec, video.processed_width, video.processed_height)
    _merge_metadata(video, result)
    return changed or before != (video.processed_duration_sec, video.processed_width, video.processed_height)


async def apply_worker_result(db: AsyncSession, video: CaptainVideo, result: WorkerResult) -> ApplyOutcome:
    """Apply a worker outcome with the duplicate-delivery guard."""
    if result.success is None:
        raise ValueError("worker result carries neither success nor ok")

    status = video.process_status
    if status == "ready":
        if result.success:
            if _merge_missing_outputs(video, result):
                await db.commit()
                await db.refresh(video)
        else:
            logger.warning("Ignoring failure report for ready video %s: %s", video.id, result.error)
        return ApplyOutcome(video=video, applied=False, idempotent=True)

    if status == "failed":
        # A late success after the stalled sweep is still a real result.
        if result.success and video.error_message == PROCESSING_TIMEOUT_ERROR:
            mark_ready(video, result)
            await db.commit()
            await db.refresh(video)
            return ApplyOutcome(video=video, applied=True)
        return ApplyOutcome(video=video, applied=False, idempotent=True)

    if result.success:
        mark_ready(video, result)
    else:
        mark_failed(video, result.error)
    await db.commit()
    await db.refresh(video)
    logger.info("Video %s moved %s -> %s", video.id, status, video.process_status)
    return ApplyOutcome(video=video, applied=True)


async def fail_stalled_processing(db: AsyncSession, max_age_minutes: int) -> int:
    """Mark records stuck in ``processing`` longer than the bound as failed."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    result = await db.execute(
        select(CaptainVideo).where(
            CaptainVideo.process_status == "processing",
            CaptainVideo.processing_started_at < cutoff,
        )
    )
    videos = result.scalars().all()
    for video in videos:
        mark_failed(video, PROCESSING_TIMEOUT_ERROR)
    if videos:
        await db.commit()
    return len(videos)
