"""Direct-to-storage upload and ingress endpoints."""

from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.videos import VideoResponse, ensure_user, serialize_video
from services.dispatch import dispatch_video
from services.ingress import THUMBNAIL_CONTENT_TYPES, FinishRequest, Thumbnail, create_video_record
from services.media_paths import is_owner_scoped_key, original_video_key
from services.object_store import ObjectStoreError

router = APIRouter()

VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".webm", ".mkv", ".avi", ".3gp"}
GENERIC_CONTENT_TYPES = {"", "application/octet-stream"}
THUMBNAIL_EXTENSIONS = {".jpg", ".jpeg", ".webp"}


class CreateUploadRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = Field(default=None, max_length=120)
    size_bytes: Optional[int] = Field(default=None, ge=0)


class CreateUploadResponse(BaseModel):
    blob_key: str
    upload_url: str
    public_url: str
    method: str = "PUT"
    content_type: str


def _bad_request(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": code, "message": message})


def _looks_like_video(file_name: str, content_type: Optional[str]) -> bool:
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype.startswith("video/"):
        return True
    if ctype in GENERIC_CONTENT_TYPES:
        return os.path.splitext(file_name.lower())[1] in VIDEO_EXTENSIONS
    return False


def _parse_float(name: str, raw: Optional[str], *, minimum: Optional[float] = 0.0) -> Optional[float]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise _bad_request("invalid_finish_payload", f"{name} must be a number.")
    if value != value or value in (float("inf"), float("-inf")):
        raise _bad_request("invalid_finish_payload", f"{name} must be finite.")
    if minimum is not None and value < minimum:
        raise _bad_request("invalid_finish_payload", f"{name} must be >= {minimum:g}.")
    return value


def _parse_dimension(name: str, raw: Optional[str]) -> Optional[int]:
    value = _parse_float(name, raw)
    if value is None or value == 0:
        return None
    return int(value)


def _parse_bool(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


async def _read_thumbnail(thumbnail: Optional[UploadFile]) -> Optional[Thumbnail]:
    if thumbnail is None or not thumbnail.filename:
        return None
    content_type = (thumbnail.content_type or "").lower()
    extension = os.path.splitext(thumbnail.filename.lower())[1]
    if content_type not in THUMBNAIL_CONTENT_TYPES and extension not in THUMBNAIL_EXTENSIONS:
        raise _bad_request("invalid_thumbnail", "Thumbnail must be a JPEG or WebP image.")
    data = await thumbnail.read(settings.MAX_THUMBNAIL_BYTES + 1)
    if not data:
        raise _bad_request("invalid_thumbnail", "Thumbnail is empty.")
    if len(data) > settings.MAX_THUMBNAIL_BYTES:
        raise _bad_request("invalid_thumbnail", "Thumbnail exceeds 2MB.")
    if content_type not in THUMBNAIL_CONTENT_TYPES:
        content_type = "image/webp" if extension == ".webp" else "image/jpeg"
    return Thumbnail(data=data, content_type=content_type)


@router.post("/create", response_model=CreateUploadResponse)
async def create_upload(
    payload: CreateUploadRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("blob_create", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    """Reserve an owner-scoped key and return where the client should PUT the bytes."""
    if not _looks_like_video(payload.file_name, payload.content_type):
        raise _bad_request("invalid_file_type", "Only video uploads are accepted.")
    if payload.size_bytes is not None and payload.size_bytes > settings.MAX_SHORT_VIDEO_BYTES:
        raise HTTPException(
            status_code=413,
            detail={"error": "file_too_large", "message": "Video exceeds the upload size limit."},
        )

    content_type = (payload.content_type or "").strip() or "application/octet-stream"
    key = original_video_key(auth.user_id, payload.file_name)
    store = request.app.state.object_store
    try:
        upload_url = store.upload_url(key, content_type)
    except ObjectStoreError as exc:
        raise HTTPException(status_code=502, detail={"error": "storage_unavailable", "message": str(exc)}) from exc
    return CreateUploadResponse(
        blob_key=key,
        upload_url=upload_url,
        public_url=store.public_url(key),
        content_type=content_type,
    )


@router.put("/upload/{key:path}")
async def upload_blob(
    key: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
):
    """Receive original bytes for the local object store."""
    if settings.OBJECT_STORE_BACKEND != "local":
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Upload via the presigned URL."})
    if not is_owner_scoped_key(key, auth.user_id):
        raise HTTPException(status_code=403, detail={"error": "forbidden", "message": "Key is outside your namespace."})

    data = await request.body()
    if not data:
        raise _bad_request("empty_upload", "Upload body is empty.")
    if len(data) > settings.MAX_SHORT_VIDEO_BYTES:
        raise HTTPException(
            status_code=413,
            detail={"error": "file_too_large", "message": "Video exceeds the upload size limit."},
        )
    content_type = request.headers.get("content-type") or "application/octet-stream"
    try:
        stored = await request.app.state.object_store.put(key, data, content_type=content_type)
    except ObjectStoreError as exc:
        raise HTTPException(status_code=502, detail={"error": "storage_unavailable", "message": str(exc)}) from exc
    return {"blob_key": stored.key, "public_url": stored.url, "size_bytes": stored.size_bytes}


@router.post("/finish", response_model=VideoResponse)
async def finish_upload(
    request: Request,
    background_tasks: BackgroundTasks,
    video_url: Optional[str] = Form(None),
    blob_key: Optional[str] = Form(None),
    start_sec: Optional[str] = Form(None),
    end_sec: Optional[str] = Form(None),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    original_duration_sec: Optional[str] = Form(None),
    did_fallback: Optional[str] = Form(None),
    fallback_reason: Optional[str] = Form(None),
    charter_id: Optional[str] = Form(None),
    thumbnail: Optional[UploadFile] = File(None),
    _rate_limit: None = Depends(rate_limit("blob_finish", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create the video record; bypass to ready or queue for normalization."""
    video_url = (video_url or "").strip()
    if not video_url.startswith(("http://", "https://")):
        raise _bad_request("invalid_finish_payload", "video_url must be an absolute http(s) URL.")
    blob_key = (blob_key or "").strip() or None
    if blob_key and not is_owner_scoped_key(blob_key, auth.user_id):
        raise _bad_request("invalid_finish_payload", "blob_key is outside your namespace.")

    start = _parse_float("start_sec", start_sec) or 0.0
    end = _parse_float("end_sec", end_sec)
    if end is not None and end < start:
        raise _bad_request("invalid_finish_payload", "end_sec must not be before start_sec.")
    finish = FinishRequest(
        owner_id=auth.user_id,
        video_url=video_url,
        blob_key=blob_key,
        start_sec=start,
        end_sec=end,
        width=_parse_dimension("width", width),
        height=_parse_dimension("height", height),
        original_duration_sec=_parse_float("original_duration_sec", original_duration_sec) or None,
        did_fallback=_parse_bool(did_fallback),
        fallback_reason=(fallback_reason or "").strip() or None,
        charter_id=(charter_id or "").strip() or None,
    )
    thumb = await _read_thumbnail(thumbnail)

    dispatcher = request.app.state.dispatcher
    await ensure_user(db, auth.user_id)
    try:
        video = await create_video_record(
            db,
            finish,
            store=request.app.state.object_store,
            worker_configured=dispatcher.name != "local",
            thumbnail=thumb,
        )
    except Exception as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail={"error": "db_error", "message": str(exc)[:300]}) from exc

    if video.process_status == "queued":
        background_tasks.add_task(dispatch_video, video.id, dispatcher)
    return serialize_video(video)
