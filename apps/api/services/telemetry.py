"""Best-effort video telemetry events and upload counters."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.video_telemetry_event import VideoTelemetryEvent

logger = logging.getLogger(__name__)

COUNTER_PREFIX = "cma:counter"

_local_counters: Dict[str, int] = {}
_local_lock = asyncio.Lock()


def _normalize_text(value: Any) -> str:
    return str(value or "").strip()


async def record_video_event(
    *,
    db: AsyncSession,
    user_id: str,
    event_name: str,
    status: str = "ok",
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Best-effort telemetry write; never breaks primary workflow."""
    try:
        event = VideoTelemetryEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_name=_normalize_text(event_name)[:80],
            status=_normalize_text(status)[:32] or "ok",
            entity_id=_normalize_text(entity_id) or None,
            details_json=details if isinstance(details, dict) else None,
        )
        db.add(event)
        await db.flush()
        logger.info(
            "Video telemetry user=%s event=%s status=%s entity_id=%s details=%s",
            user_id,
            event.event_name,
            event.status,
            event.entity_id,
            event.details_json or {},
        )
    except Exception as exc:
        logger.warning("Video telemetry write skipped for user=%s event=%s: %s", user_id, event_name, exc)


async def increment_counters(names: Iterable[str], amount: int = 1) -> Dict[str, int]:
    """Bump named counters in Redis, falling back to process memory."""
    names = [name for name in names if name]
    values: Dict[str, int] = {}
    try:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            for name in names:
                values[name] = int(await redis_client.incrby(f"{COUNTER_PREFIX}:{name}", amount))
        finally:
            await redis_client.aclose()
        return values
    except Exception as exc:
        logger.warning("Redis counters unavailable, using local counters: %s", exc)

    async with _local_lock:
        for name in names:
            _local_counters[name] = _local_counters.get(name, 0) + amount
            values[name] = _local_counters[name]
    return values


def upload_counter_names(did_fallback: bool) -> list:
    return [
        "short_video_upload_total",
        "short_video_upload_fallback" if did_fallback else "short_video_upload_non_fallback",
    ]
