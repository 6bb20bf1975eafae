"""Durable video job queue helpers (Redis/RQ) and stalled-record recovery."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from rq import Queue

from config import settings
from database import async_session_maker
from services.video_state import fail_stalled_processing


VIDEO_QUEUE_NAME = "video_jobs"


def get_redis_connection(redis_url: Optional[str] = None) -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(redis_url or settings.REDIS_URL)


def get_video_queue(redis_url: Optional[str] = None) -> Queue:
    """Return the queue the relay broker publishes to."""
    return Queue(
        name=VIDEO_QUEUE_NAME,
        connection=get_redis_connection(redis_url),
        default_timeout=1800,
    )


async def recover_stalled_videos(max_age_minutes: Optional[int] = None) -> int:
    """Mark videos stuck in processing as failed after restarts or lost callbacks."""
    minutes = settings.PROCESSING_TIMEOUT_MINUTES if max_age_minutes is None else max_age_minutes
    async with async_session_maker() as db:
        return await fail_stalled_processing(db, minutes)
