"""Create captain video records and decide bypass vs. normalization."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from models.captain_video import CaptainVideo
from services.media_paths import client_thumbnail_key
from services.object_store import ObjectStore, delete_quietly
from services.telemetry import record_video_event
from services.transcode import VideoProbe, probe_video_quietly

logger = logging.getLogger(__name__)

DURATION_EPSILON_SEC = 0.05
MAX_FALLBACK_REASON_LENGTH = 300
THUMBNAIL_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/webp"}


@dataclass
class FinishRequest:
    owner_id: str
    video_url: str
    blob_key: Optional[str] = None
    start_sec: float = 0.0
    end_sec: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    original_duration_sec: Optional[float] = None
    did_fallback: bool = False
    fallback_reason: Optional[str] = None
    charter_id: Optional[str] = None


@dataclass
class Thumbnail:
    data: bytes
    content_type: str


@dataclass
class IngressDecision:
    bypass: bool
    reason: str
    effective_duration_sec: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


def selection_duration(request: FinishRequest) -> Optional[float]:
    """Duration the client says it selected, when it said so."""
    if request.did_fallback:
        return None
    if request.end_sec is not None:
        return max(0.0, request.end_sec - request.start_sec)
    if request.start_sec == 0 and request.original_duration_sec:
        return request.original_duration_sec
    return None


def decide_bypass(
    effective_duration_sec: Optional[float],
    width: Optional[int],
    height: Optional[int],
    *,
    worker_configured: bool,
    config: Settings = default_settings,
) -> IngressDecision:
    """Bypass only clips already within the duration cap and target frame."""

    def decision(bypass: bool, reason: str) -> IngressDecision:
        return IngressDecision(bypass, reason, effective_duration_sec, width, height)

    if worker_configured:
        return decision(False, "worker_configured")
    if effective_duration_sec is None:
        return decision(False, "duration_unknown")
    if effective_duration_sec > config.MAX_CLIP_SECONDS + DURATION_EPSILON_SEC:
        return decision(False, "over_duration")
    if width and height and (width > config.TARGET_MAX_WIDTH or height > config.TARGET_MAX_HEIGHT):
        return decision(False, "over_dimensions")
    return decision(True, "within_policy" if width and height else "dimensions_unknown")


async def _probe_source(url: str) -> VideoProbe:
    return await asyncio.to_thread(probe_video_quietly, url)


async def evaluate_request(
    request: FinishRequest,
    *,
    worker_configured: bool,
    config: Settings = default_settings,
) -> IngressDecision:
    width, height = request.width, request.height
    duration = selection_duration(request)

    if request.did_fallback:
        # Uploaded bytes are the untrimmed original.
        duration = request.original_duration_sec
    needs_probe = duration is None or not (width and height)
    if needs_probe and not worker_configured:
        probe = await _probe_source(request.video_url)
        width = width or probe.width
        height = height or probe.height
        if duration is None and probe.duration_sec is not None:
            if request.did_fallback:
                duration = probe.duration_sec
            else:
                duration = max(0.0, probe.duration_sec - request.start_sec)

    decision = decide_bypass(duration, width, height, worker_configured=worker_configured, config=config)
    if decision.bypass and request.did_fallback and request.start_sec > 0:
        decision = IngressDecision(False, "untrimmed_window", duration, width, height)
    return decision


async def store_client_thumbnail(store: ObjectStore, owner_id: str, thumbnail: Optional[Thumbnail]):
    """Persist a client-supplied thumbnail; failures only cost the thumbnail."""
    if thumbnail is None:
        return None
    key = client_thumbnail_key(owner_id)
    try:
        return await store.put(key, thumbnail.data, content_type=thumbnail.content_type or "image/jpeg")
    except Exception as exc:
        logger.warning("Thumbnail put failed for owner %s: %s", owner_id, exc)
        return None


def _target_duration(request: FinishRequest, decision: IngressDecision, config: Settings) -> Optional[float]:
    if request.did_fallback:
        if request.end_sec is not None:
            return min(config.MAX_CLIP_SECONDS, max(0.0, request.end_sec - request.start_sec))
        return min(config.MAX_CLIP_SECONDS, decision.effective_duration_sec) if decision.effective_duration_sec else None
    if decision.effective_duration_sec is None:
        return None
    return min(config.MAX_CLIP_SECONDS, decision.effective_duration_sec)


async def create_video_record(
    db: AsyncSession,
    request: FinishRequest,
    *,
    store: ObjectStore,
    worker_configured: bool,
    thumbnail: Optional[Thumbnail] = None,
    config: Settings = default_settings,
) -> CaptainVideo:
    """Create the record as ``ready`` (bypass) or ``queued``; the caller dispatches queued ones."""
    stored_thumb = await store_client_thumbnail(store, request.owner_id, thumbnail)
    decision = await evaluate_request(request, worker_configured=worker_configured, config=config)

    video = CaptainVideo(
        owner_id=request.owner_id,
        charter_id=request.charter_id,
        original_url=request.video_url,
        blob_key=request.blob_key,
        trim_start_sec=request.start_sec,
        trim_end_sec=request.end_sec,
        original_duration_sec=request.original_duration_sec,
        original_width=decision.width,
        original_height=decision.height,
        processed_duration_sec=_target_duration(request, decision, config),
        thumbnail_url=stored_thumb.url if stored_thumb else None,
        thumbnail_blob_key=stored_thumb.key if stored_thumb else None,
        did_fallback=bool(request.did_fallback),
        fallback_reason=(request.fallback_reason or None) and request.fallback_reason[:MAX_FALLBACK_REASON_LENGTH],
    )
    if decision.bypass:
        video.process_status = "ready"
        video.ready_720p_url = request.video_url
        video.normalized_blob_key = request.blob_key
        video.processed_width = decision.width
        video.processed_height = decision.height
    else:
        video.process_status = "queued"

    try:
        db.add(video)
        await db.flush()
        await record_video_event(
            db=db,
            user_id=request.owner_id,
            event_name="video_ingress",
            status=video.process_status,
            entity_id=video.id,
            details={
                "reason": decision.reason,
                "effective_duration_sec": decision.effective_duration_sec,
                "width": decision.width,
                "height": decision.height,
                "did_fallback": bool(request.did_fallback),
            },
        )
        await db.commit()
        await db.refresh(video)
    except Exception:
        # No record will point at the stored thumbnail.
        if stored_thumb:
            await delete_quietly(store, stored_thumb.key)
        raise
    logger.info(
        "Created video %s for owner %s status=%s reason=%s",
        video.id,
        request.owner_id,
        video.process_status,
        decision.reason,
    )
    return video
