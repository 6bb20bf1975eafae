"""Value types shared by the upload queue, its transport and the precheck."""

from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Literal, Optional

from tenacity import RetryCallState, wait_exponential

Priority = Literal["urgent", "high", "normal", "low"]
ItemStatus = Literal["pending", "uploading", "processing", "done", "error", "canceled"]
ErrorCategory = Literal["network", "server", "client", "validation", "unknown"]

PRIORITY_WEIGHTS: Dict[str, int] = {
    "urgent": 1000,
    "high": 100,
    "normal": 10,
    "low": 1,
}

ACTIVE_STATUSES = ("uploading", "processing")
TERMINAL_STATUSES = ("done", "error", "canceled")
MAX_FALLBACK_REASON_LENGTH = 300


@dataclass(frozen=True)
class TrimMetadata:
    """Trim window and source metadata sent with ``/blob/finish``."""

    start_sec: float = 0.0
    end_sec: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    original_duration_sec: Optional[float] = None
    did_fallback: bool = False
    fallback_reason: Optional[str] = None

    @property
    def duration_sec(self) -> Optional[float]:
        if self.end_sec is None or self.end_sec <= self.start_sec:
            return None
        return self.end_sec - self.start_sec

    def form_fields(self) -> Dict[str, str]:
        fields = {
            "start_sec": f"{self.start_sec:g}",
            "did_fallback": "true" if self.did_fallback else "false",
        }
        if self.end_sec is not None:
            fields["end_sec"] = f"{self.end_sec:g}"
        if self.width:
            fields["width"] = str(int(self.width))
        if self.height:
            fields["height"] = str(int(self.height))
        if self.original_duration_sec:
            fields["original_duration_sec"] = f"{self.original_duration_sec:g}"
        if self.did_fallback and self.fallback_reason:
            fields["fallback_reason"] = self.fallback_reason[:MAX_FALLBACK_REASON_LENGTH]
        return fields


@dataclass(frozen=True)
class UploadSource:
    path: Path
    name: str
    size_bytes: int
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "UploadSource":
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            path=path,
            name=path.name,
            size_bytes=os.path.getsize(path),
            content_type=content_type or guessed or "application/octet-stream",
        )


@dataclass(frozen=True)
class UploadErrorDetails:
    code: str
    category: ErrorCategory
    message: str
    recoverable: bool
    status_code: Optional[int] = None
    retry_after_sec: Optional[float] = None


@dataclass(frozen=True)
class ProgressInfo:
    bytes_sent: int
    total_bytes: int
    speed_bps: Optional[float] = None
    eta_sec: Optional[float] = None

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(self.bytes_sent / self.total_bytes, 1.0)


@dataclass
class QueueItem:
    """One upload. The queue mutates its own copy; listeners get snapshots."""

    id: str
    source: UploadSource
    created_at: float
    sequence: int
    priority: Priority = "normal"
    trim: Optional[TrimMetadata] = None
    status: ItemStatus = "pending"
    progress: float = 0.0
    queue_position: Optional[int] = None
    start_requested: bool = False
    started_at: Optional[float] = None
    uploaded_at: Optional[float] = None
    completed_at: Optional[float] = None
    canceled_at: Optional[float] = None
    blob_key: Optional[str] = None
    video_url: Optional[str] = None
    video_id: Optional[str] = None
    process_status: Optional[str] = None
    error: Optional[str] = None
    error_details: Optional[UploadErrorDetails] = None
    retry_count: int = 0
    next_retry_at: Optional[float] = None
    progress_info: Optional[ProgressInfo] = None

    @property
    def size_bytes(self) -> int:
        return self.source.size_bytes

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS.get(self.priority, PRIORITY_WEIGHTS["normal"])


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def backoff(self) -> wait_exponential:
        return wait_exponential(multiplier=self.base_delay_sec, max=self.max_delay_sec, exp_base=self.multiplier)

    def delay_for(self, attempt: int, rand: Callable[[], float]) -> float:
        """Backoff before retry number ``attempt + 1``; jitter stays within +/-12.5%.

        The exponential curve comes from tenacity; jitter uses the queue's
        random source so schedules stay reproducible.
        """
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = max(attempt, 0) + 1
        delay = self.backoff()(state)
        if self.jitter:
            delay += delay * 0.25 * (rand() - 0.5)
        return min(max(delay, 0.0), self.max_delay_sec)


@dataclass(frozen=True)
class QueueConfig:
    max_concurrent: int = 2
    auto_start: bool = False
    max_queue_size: int = 20
    max_completed_items: int = 5
    max_failed_items: int = 3
    auto_cleanup_after_sec: float = 300.0
    done_removal_delay_sec: float = 0.6
    speed_window_sec: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(frozen=True)
class QueueAnalytics:
    total_items: int
    active_uploads: int
    completed_uploads: int
    failed_uploads: int
    average_upload_sec: float
    total_bytes_uploaded: int
    average_queue_wait_sec: float
