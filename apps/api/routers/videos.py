"""Captain video record endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.captain_video import CaptainVideo
from models.user import User
from routers.auth_scope import AuthContext, ensure_owner, get_auth_context, get_owner_or_worker_context
from routers.rate_limit import rate_limit
from services.dispatch import dispatch_video
from services.object_store import delete_quietly
from services.telemetry import increment_counters, record_video_event, upload_counter_names
from services.video_state import get_video, requeue_failed

router = APIRouter()

LIST_LIMIT = 50


class VideoResponse(BaseModel):
    id: str
    owner_id: str
    charter_id: Optional[str] = None
    original_url: str
    blob_key: Optional[str] = None
    process_status: str
    ready_720p_url: Optional[str] = None
    normalized_blob_key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    thumbnail_blob_key: Optional[str] = None
    trim_start_sec: float = 0.0
    trim_end_sec: Optional[float] = None
    original_duration_sec: Optional[float] = None
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    processed_duration_sec: Optional[float] = None
    processed_width: Optional[int] = None
    processed_height: Optional[int] = None
    error_message: Optional[str] = None
    last_dispatch_error: Optional[str] = None
    dispatch_attempts: int = 0
    did_fallback: bool = False
    fallback_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VideoListResponse(BaseModel):
    videos: List[VideoResponse]
    count: int


class UploadAnalyticsRequest(BaseModel):
    video_id: Optional[str] = None
    file_name: Optional[str] = Field(default=None, max_length=255)
    size_bytes: Optional[int] = Field(default=None, ge=0)
    duration_sec: Optional[float] = Field(default=None, ge=0)
    start_sec: Optional[float] = Field(default=None, ge=0)
    trimmed: bool = False
    did_fallback: bool = False
    upload_ms: Optional[int] = Field(default=None, ge=0)


async def ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=user_id, email=f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


def serialize_video(video: CaptainVideo) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        owner_id=video.owner_id,
        charter_id=video.charter_id,
        original_url=video.original_url,
        blob_key=video.blob_key,
        process_status=video.process_status,
        ready_720p_url=video.ready_720p_url,
        normalized_blob_key=video.normalized_blob_key,
        thumbnail_url=video.thumbnail_url,
        thumbnail_blob_key=video.thumbnail_blob_key,
        trim_start_sec=float(video.trim_start_sec or 0.0),
        trim_end_sec=video.trim_end_sec,
        original_duration_sec=video.original_duration_sec,
        original_width=video.original_width,
        original_height=video.original_height,
        processed_duration_sec=video.processed_duration_sec,
        processed_width=video.processed_width,
        processed_height=video.processed_height,
        error_message=video.error_message,
        last_dispatch_error=video.last_dispatch_error,
        dispatch_attempts=int(video.dispatch_attempts or 0),
        did_fallback=bool(video.did_fallback),
        fallback_reason=video.fallback_reason,
        created_at=video.created_at.isoformat() if video.created_at else None,
        updated_at=video.updated_at.isoformat() if video.updated_at else None,
    )


async def _get_video_or_404(db: AsyncSession, video_id: str) -> CaptainVideo:
    video = await get_video(db, video_id)
    if video is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": f"Video {video_id} not found."})
    return video


@router.get("", response_model=VideoListResponse)
async def list_my_videos(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """The caller's most recent videos, newest first."""
    result = await db.execute(
        select(CaptainVideo)
        .where(CaptainVideo.owner_id == auth.user_id)
        .order_by(CaptainVideo.created_at.desc(), CaptainVideo.id.desc())
        .limit(LIST_LIMIT)
    )
    videos = [serialize_video(video) for video in result.scalars().all()]
    return VideoListResponse(videos=videos, count=len(videos))


@router.post("/analytics")
async def record_upload_analytics(
    payload: UploadAnalyticsRequest,
    _rate_limit: None = Depends(rate_limit("video_analytics", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Record one upload analytics event; never fails the caller's upload."""
    counters = await increment_counters(upload_counter_names(payload.did_fallback))
    try:
        await ensure_user(db, auth.user_id)
        await record_video_event(
            db=db,
            user_id=auth.user_id,
            event_name="short_video_upload",
            status="fallback" if payload.did_fallback else "ok",
            entity_id=payload.video_id,
            details=payload.model_dump(exclude={"video_id"}),
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        return {"ok": False, "counters": counters, "message": str(exc)[:200]}
    return {"ok": True, "counters": counters}


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video_record(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    video = await _get_video_or_404(db, video_id)
    ensure_owner(auth, video.owner_id)
    return serialize_video(video)


@router.delete("/{video_id}")
async def delete_video_record(
    video_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Delete the record, then best-effort delete its stored objects."""
    video = await _get_video_or_404(db, video_id)
    ensure_owner(auth, video.owner_id)
    keys = (video.blob_key, video.normalized_blob_key, video.thumbnail_blob_key)
    await db.delete(video)
    await db.commit()
    await delete_quietly(request.app.state.object_store, *keys)
    return {"ok": True, "deleted": video_id}


@router.post("/{video_id}/dispatch")
async def dispatch_video_record(
    video_id: str,
    request: Request,
    _rate_limit: None = Depends(rate_limit("video_dispatch", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_owner_or_worker_context),
    db: AsyncSession = Depends(get_db),
):
    """Re-dispatch a queued video (owner session or worker secret)."""
    video = await _get_video_or_404(db, video_id)
    ensure_owner(auth, video.owner_id)
    if video.process_status != "queued":
        return {"video": serialize_video(video), "skipped": True}

    outcome = await dispatch_video(video_id, request.app.state.dispatcher)
    if outcome.status == "dispatch_failed":
        raise HTTPException(status_code=502, detail={"error": "dispatch_failed", "message": outcome.error})
    return outcome.as_dict()


@router.post("/{video_id}/requeue", response_model=VideoResponse)
async def requeue_failed_video(
    video_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("video_requeue", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Move a failed video back to queued and dispatch it again."""
    video = await _get_video_or_404(db, video_id)
    ensure_owner(auth, video.owner_id)
    if not await requeue_failed(db, video_id):
        raise HTTPException(
            status_code=409,
            detail={"error": "not_failed", "message": f"Video is {video.process_status}; only failed videos can be requeued."},
        )
    await db.refresh(video)
    background_tasks.add_task(dispatch_video, video_id, request.app.state.dispatcher)
    return serialize_video(video)
