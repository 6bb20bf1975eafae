"""Prioritised, retrying upload queue that runs on the caller's event loop.

Items move ``pending -> uploading -> processing -> done``; a failed attempt
either waits for a backoff retry (still ``pending``) or lands in ``error``
once the retry policy is exhausted. Listeners always receive a full snapshot.
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
import random
import time
import uuid
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from client.transport import UploadTransport, categorize_error
from client.types import (
    ACTIVE_STATUSES,
    PRIORITY_WEIGHTS,
    TERMINAL_STATUSES,
    Priority,
    ProgressInfo,
    QueueAnalytics,
    QueueConfig,
    QueueItem,
    TrimMetadata,
    UploadErrorDetails,
    UploadSource,
)

logger = logging.getLogger(__name__)

ETA_CUTOFF_FRACTION = 0.95
ETA_MIN_REMAINING_BYTES = 1024

Snapshot = Tuple[QueueItem, ...]
Listener = Callable[[Snapshot], None]
ErrorListener = Callable[[UploadErrorDetails], None]
Thumbnailer = Callable[[UploadSource], Awaitable[Optional[bytes]]]


class _ProgressTracker:
    """Transfer speed over a sliding window of (time, bytes) samples."""

    def __init__(self, window_sec: float, clock: Callable[[], float]):
        self.window_sec = window_sec
        self.clock = clock
        self.samples: Deque[Tuple[float, int]] = collections.deque()

    def update(self, bytes_sent: int, total_bytes: int) -> ProgressInfo:
        now = self.clock()
        self.samples.append((now, bytes_sent))
        while self.samples and now - self.samples[0][0] > self.window_sec:
            self.samples.popleft()

        speed = None
        if len(self.samples) >= 2:
            (t0, b0), (t1, b1) = self.samples[0], self.samples[-1]
            if t1 > t0:
                speed = (b1 - b0) / (t1 - t0)

        eta = None
        remaining = total_bytes - bytes_sent
        fraction = bytes_sent / total_bytes if total_bytes else 1.0
        if speed and speed > 0 and fraction < ETA_CUTOFF_FRACTION and remaining > ETA_MIN_REMAINING_BYTES:
            eta = remaining / speed
        return ProgressInfo(bytes_sent=bytes_sent, total_bytes=total_bytes, speed_bps=speed, eta_sec=eta)


class VideoUploadQueue:
    def __init__(
        self,
        transport: UploadTransport,
        config: Optional[QueueConfig] = None,
        *,
        thumbnailer: Optional[Thumbnailer] = None,
        counter: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ):
        self.transport = transport
        self.config = config or QueueConfig()
        self.thumbnailer = thumbnailer
        self._counter = counter
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic
        self._rand = rand

        self._items: List[QueueItem] = []
        self._sequence = 0
        self._paused = False
        self._auto_start = self.config.auto_start
        self._max_concurrent = max(1, int(self.config.max_concurrent))
        self._tasks: Dict[str, asyncio.Task] = {}
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._removal_tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = []
        self._error_listeners: List[ErrorListener] = []

    # -- observation -------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def snapshot(self) -> Snapshot:
        return tuple(dataclasses.replace(item) for item in self._items)

    def get(self, item_id: str) -> Optional[QueueItem]:
        item = self._find(item_id)
        return dataclasses.replace(item) if item else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``, call it with the current snapshot, return an unsubscribe."""
        self._listeners.append(listener)
        self._notify(listener, self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_errors(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return unsubscribe

    # -- queue operations --------------------------------------------------

    def enqueue(
        self,
        source: UploadSource,
        trim: Optional[TrimMetadata] = None,
        priority: Priority = "normal",
    ) -> Optional[str]:
        """Add a pending upload; returns None when the queue is full."""
        if priority not in PRIORITY_WEIGHTS:
            priority = "normal"
        if len(self._items) >= self.config.max_queue_size:
            logger.warning("Upload queue at limit (%s); running auto-cleanup", self.config.max_queue_size)
            self.auto_cleanup()
            if len(self._items) >= self.config.max_queue_size:
                self._report_error(
                    UploadErrorDetails(
                        code="QUEUE_FULL",
                        category="validation",
                        message=f"Upload queue is full ({self.config.max_queue_size} items).",
                        recoverable=False,
                    )
                )
                self._count("video_queue_rejected")
                return None

        now = self._clock()
        self._sequence += 1
        item = QueueItem(
            id=f"vid_{int(now * 1000)}_{uuid.uuid4().hex[:6]}",
            source=source,
            created_at=now,
            sequence=self._sequence,
            priority=priority,
            trim=trim,
        )
        self._items.append(item)
        logger.debug("enqueue id=%s name=%s priority=%s size=%s", item.id, source.name, priority, source.size_bytes)
        self._count("video_queue_enqueue")
        self._changed()
        return item.id

    def start_upload(self, item_id: str) -> None:
        """Mark a pending item startable even when auto-start is off."""
        item = self._find(item_id)
        if item and item.status == "pending":
            item.start_requested = True
            self._kick()

    def set_auto_start(self, enabled: bool) -> None:
        self._auto_start = bool(enabled)
        if self._auto_start:
            self._kick()

    def update_pending_trim(self, item_id: str, source: UploadSource, trim: Optional[TrimMetadata]) -> bool:
        item = self._find(item_id)
        if item is None or item.status != "pending":
            return False
        item.source = source
        item.trim = trim
        self._emit()
        return True

    def cancel(self, item_id: str) -> None:
        item = self._find(item_id)
        if item is None:
            return
        if item.status == "pending":
            self._cancel_retry(item_id)
            self._items.remove(item)
        elif item.status in ACTIVE_STATUSES:
            item.status = "canceled"
            item.canceled_at = self._clock()
            item.progress_info = None
            task = self._tasks.pop(item_id, None)
            if task is not None:
                task.cancel()
        else:
            return
        logger.debug("cancel id=%s progress=%.2f", item_id, item.progress)
        self._count("video_queue_canceled")
        self._changed()

    def retry(self, item_id: str) -> None:
        """Manual retry of an errored or canceled item; resets the attempt counter."""
        item = self._find(item_id)
        if item is None or item.status not in ("error", "canceled"):
            return
        self._reset_to_pending(item)
        item.start_requested = True
        self._count("video_queue_retry")
        self._changed()

    def remove(self, item_id: str) -> None:
        item = self._find(item_id)
        if item is None:
            return
        self._cancel_retry(item_id)
        task = self._tasks.pop(item_id, None)
        if task is not None:
            task.cancel()
        self._items.remove(item)
        self._changed()

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            self._count("video_queue_paused")
            self._emit()

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            self._count("video_queue_resumed")
        self._changed()

    def pause_all(self) -> None:
        """Pause scheduling and cancel every in-flight transfer."""
        self.pause()
        for item in [i for i in self._items if i.status == "uploading"]:
            self.cancel(item.id)

    def resume_all(self) -> None:
        self.resume()

    def retry_all_failed(self) -> None:
        for item in [i for i in self._items if i.status == "error"]:
            self.retry(item.id)

    def clear_completed(self) -> None:
        self._items = [item for item in self._items if item.status not in TERMINAL_STATUSES]
        self._emit()

    def clear_all(self) -> None:
        for task in list(self._tasks.values()) + list(self._retry_tasks.values()):
            task.cancel()
        self._tasks.clear()
        self._retry_tasks.clear()
        self._items = []
        self._emit()

    def set_priority(self, item_id: str, priority: Priority) -> None:
        item = self._find(item_id)
        if item is None or item.status != "pending" or priority not in PRIORITY_WEIGHTS:
            return
        item.priority = priority
        self._changed()

    def set_max_concurrent(self, value: int) -> None:
        self._max_concurrent = max(1, int(value))
        self._kick()

    def auto_cleanup(self) -> int:
        """Trim terminal items by count and age; returns how many were removed."""
        before = len(self._items)
        now = self._clock()
        for status, keep in (("done", self.config.max_completed_items), ("error", self.config.max_failed_items)):
            matching = sorted((i for i in self._items if i.status == status), key=lambda i: i.created_at)
            excess = matching[: max(len(matching) - keep, 0)]
            self._items = [i for i in self._items if i not in excess]
        self._items = [
            i
            for i in self._items
            if not (i.status in TERMINAL_STATUSES and now - i.created_at > self.config.auto_cleanup_after_sec)
        ]
        removed = before - len(self._items)
        if removed:
            self._emit()
        return removed

    def get_analytics(self) -> QueueAnalytics:
        now = self._clock()
        done = [i for i in self._items if i.status == "done"]
        timed = [i for i in done if i.started_at is not None and i.completed_at is not None]
        pending = [i for i in self._items if i.status == "pending"]
        return QueueAnalytics(
            total_items=len(self._items),
            active_uploads=self._active_count(),
            completed_uploads=len(done),
            failed_uploads=sum(1 for i in self._items if i.status == "error"),
            average_upload_sec=(sum(i.completed_at - i.started_at for i in timed) / len(timed)) if timed else 0.0,
            total_bytes_uploaded=sum(i.size_bytes for i in done),
            average_queue_wait_sec=(sum(now - i.created_at for i in pending) / len(pending)) if pending else 0.0,
        )

    async def join(self) -> None:
        """Wait until no transfer or scheduled retry is outstanding."""
        while self._tasks or self._retry_tasks:
            await asyncio.gather(*self._tasks.values(), *self._retry_tasks.values(), return_exceptions=True)

    async def aclose(self) -> None:
        self._paused = True
        tasks = [*self._tasks.values(), *self._retry_tasks.values(), *self._removal_tasks.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._retry_tasks.clear()
        self._removal_tasks.clear()

    # -- scheduling --------------------------------------------------------

    def _find(self, item_id: str) -> Optional[QueueItem]:
        return next((item for item in self._items if item.id == item_id), None)

    def _active_count(self) -> int:
        return sum(1 for item in self._items if item.status in ACTIVE_STATUSES)

    def _pending_order(self) -> List[QueueItem]:
        pending = [item for item in self._items if item.status == "pending"]
        return sorted(pending, key=lambda item: (-item.weight, item.sequence))

    def _startable(self, item: QueueItem) -> bool:
        return item.id not in self._retry_tasks and (self._auto_start or item.start_requested)

    def _kick(self) -> None:
        if self._paused:
            return
        for item in self._pending_order():
            if self._active_count() >= self._max_concurrent:
                break
            if self._startable(item):
                self._start(item)

    def _start(self, item: QueueItem) -> None:
        item.status = "uploading"
        item.progress = 0.0
        item.started_at = self._clock()
        item.queue_position = None
        item.next_retry_at = None
        self._tasks[item.id] = asyncio.get_running_loop().create_task(self._run(item.id))
        self._count("video_queue_started")
        self._emit()

    def _changed(self) -> None:
        self._kick()
        self._emit()

    async def _run(self, item_id: str) -> None:
        tracker = _ProgressTracker(self.config.speed_window_sec, self._monotonic)
        try:
            item = self._find(item_id)
            if item is None:
                return
            created = await self.transport.create_upload(item.source)
            item.blob_key = created.blob_key
            video_url = await self.transport.send_bytes(
                created,
                item.source,
                lambda sent, total: self._on_progress(item_id, tracker, sent, total),
            )
            if not self._still(item_id, "uploading"):
                return
            item.status = "processing"
            item.progress = 1.0
            item.uploaded_at = self._clock()
            item.video_url = video_url
            self._count("video_queue_uploaded")
            self._emit()

            thumbnail = await self._capture_thumbnail(item.source)
            record = await self.transport.finish_upload(created, video_url, item.trim, thumbnail)
            if not self._still(item_id, "processing"):
                return
            item.status = "done"
            item.completed_at = self._clock()
            item.video_id = record.get("id")
            item.process_status = record.get("process_status")
            item.progress_info = None
            self._count("video_queue_done")
            self._emit()
            self._schedule_removal(item_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_failure(item_id, exc)
        finally:
            if self._tasks.get(item_id) is asyncio.current_task():
                del self._tasks[item_id]
            self._kick()

    def _still(self, item_id: str, status: str) -> bool:
        item = self._find(item_id)
        return item is not None and item.status == status

    def _on_progress(self, item_id: str, tracker: _ProgressTracker, sent: int, total: int) -> None:
        item = self._find(item_id)
        if item is None or item.status != "uploading":
            return
        info = tracker.update(sent, total)
        # 1.0 is reserved for the uploaded state.
        item.progress = min(info.fraction, 0.99)
        item.progress_info = info
        self._emit()

    async def _capture_thumbnail(self, source: UploadSource) -> Optional[bytes]:
        if self.thumbnailer is None:
            return None
        try:
            return await self.thumbnailer(source)
        except Exception as exc:
            logger.warning("Thumbnail capture failed for %s: %s", source.name, exc)
            return None

    def _handle_failure(self, item_id: str, exc: Exception) -> None:
        self._count("video_queue_error")
        item = self._find(item_id)
        if item is None or item.status not in ACTIVE_STATUSES:
            return
        details = categorize_error(exc)
        policy = self.config.retry
        attempts = item.retry_count + 1
        item.retry_count = attempts
        item.error = details.message
        item.error_details = details
        item.progress_info = None
        logger.warning("Upload %s attempt %s failed (%s): %s", item_id, attempts, details.category, details.message)

        if details.recoverable and attempts < policy.max_attempts:
            delay = policy.delay_for(attempts - 1, self._rand)
            item.status = "pending"
            item.progress = 0.0
            item.next_retry_at = self._clock() + delay
            self._retry_tasks[item_id] = asyncio.get_running_loop().create_task(self._retry_after(item_id, delay))
        else:
            item.status = "error"
            if details.recoverable:
                item.error = f"Failed after {attempts} attempts: {details.message}"
                self._count("video_queue_max_retries")
            item.error_details = dataclasses.replace(details, recoverable=False)
        self._emit()

    async def _retry_after(self, item_id: str, delay: float) -> None:
        try:
            await self._sleep(delay)
        finally:
            if self._retry_tasks.get(item_id) is asyncio.current_task():
                del self._retry_tasks[item_id]
        item = self._find(item_id)
        if item is None or item.status != "pending":
            return
        item.start_requested = True
        self._count("video_queue_retry")
        self._changed()

    def _cancel_retry(self, item_id: str) -> None:
        task = self._retry_tasks.pop(item_id, None)
        if task is not None:
            task.cancel()

    def _reset_to_pending(self, item: QueueItem) -> None:
        item.status = "pending"
        item.progress = 0.0
        item.retry_count = 0
        item.error = None
        item.error_details = None
        item.canceled_at = None
        item.next_retry_at = None
        item.progress_info = None

    def _schedule_removal(self, item_id: str) -> None:
        async def remove_later() -> None:
            try:
                await self._sleep(self.config.done_removal_delay_sec)
                item = self._find(item_id)
                if item is not None and item.status == "done":
                    self._items.remove(item)
                    self._emit()
            finally:
                self._removal_tasks.pop(item_id, None)

        self._removal_tasks[item_id] = asyncio.get_running_loop().create_task(remove_later())

    # -- notification ------------------------------------------------------

    def _update_positions(self) -> None:
        for position, item in enumerate(self._pending_order(), start=1):
            item.queue_position = position

    def _emit(self) -> None:
        self._update_positions()
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            self._notify(listener, snapshot)

    def _notify(self, listener: Listener, snapshot: Snapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("Upload queue listener failed")

    def _report_error(self, details: UploadErrorDetails) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(details)
            except Exception:
                logger.exception("Upload queue error listener failed")

    def _count(self, name: str) -> None:
        if self._counter is None:
            return
        try:
            self._counter(name)
        except Exception as exc:
            logger.warning("Upload counter %s failed: %s", name, exc)
