"""Object-storage key conventions for captain video assets."""

from __future__ import annotations

import os
import re
import secrets
import time
from typing import Optional


ORIGINAL_VIDEO_PREFIX = "captains"
NORMALIZED_PREFIX = "captain-videos/normalized"
THUMBNAIL_PREFIX = "captain-videos/thumbs"

# Matches both worker outputs, e.g. .../captain-videos/normalized/<id>-720p.mp4
# and .../captain-videos/thumbs/<id>.jpg, with or without a query string.
VIDEO_ID_FROM_URL_RE = re.compile(
    r"/captain-videos/(?:normalized|thumbs)/([A-Za-z0-9][A-Za-z0-9_-]*?)(?:-720p)?\.(?:mp4|jpg)(?:$|[?#])"
)


def safe_filename(name: str, default: str = "upload.mp4") -> str:
    base = os.path.basename(name or default)
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned.strip(".") or default


def _unique_prefix() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def original_video_key(owner_id: str, file_name: str) -> str:
    """Owner-scoped key for a direct-to-storage original upload."""
    return f"{ORIGINAL_VIDEO_PREFIX}/{owner_id}/media/original/{_unique_prefix()}-{safe_filename(file_name)}"


def client_thumbnail_key(owner_id: str) -> str:
    return f"{ORIGINAL_VIDEO_PREFIX}/{owner_id}/media/thumbs/{_unique_prefix()}.jpg"


def normalized_video_key(video_id: str) -> str:
    return f"{NORMALIZED_PREFIX}/{video_id}-720p.mp4"


def worker_thumbnail_key(video_id: str) -> str:
    return f"{THUMBNAIL_PREFIX}/{video_id}.jpg"


def is_owner_scoped_key(key: str, owner_id: str) -> bool:
    return key.startswith(f"{ORIGINAL_VIDEO_PREFIX}/{owner_id}/") and ".." not in key.split("/")


def video_id_from_url(url: Optional[str]) -> Optional[str]:
    """Recover a video id embedded in a worker output URL."""
    if not url or not isinstance(url, str):
        return None
    match = VIDEO_ID_FROM_URL_RE.search(url)
    return match.group(1) if match else None
