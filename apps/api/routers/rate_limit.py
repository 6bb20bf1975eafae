"""Redis-backed fixed-window rate limiting with an in-process fallback."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "cma:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_identifier(request: Request) -> str:
    """Bucket per bearer credential when present, otherwise per client address."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        return "tok:" + hashlib.sha256(authorization[7:].strip().encode("utf-8")).hexdigest()[:24]
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return "ip:" + forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return "ip:" + request.client.host
    return "ip:unknown"


async def _count_locally(key: str, window_seconds: int) -> int:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count


async def _count_in_redis(key: str, window_seconds: int) -> int:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
        return int(current)
    finally:
        await redis_client.aclose()


def rate_limit(bucket: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """FastAPI dependency allowing ``limit`` calls per caller per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        window = int(time.time() // window_seconds)
        key = f"{KEY_PREFIX}:{bucket}:{_caller_identifier(request)}:{window}"
        try:
            current = await _count_in_redis(key, window_seconds)
        except Exception as exc:
            logger.debug("Rate limit falling back to local counters: %s", exc)
            current = await _count_locally(key, window_seconds)

        if current > limit:
            raise HTTPException(
                status_code=429,
                detail={"error": "rate_limited", "message": f"Too many {bucket} requests. Try again later."},
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
