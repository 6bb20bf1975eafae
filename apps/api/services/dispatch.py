"""Hand queued captain videos to exactly one normalization backend."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings, settings as default_settings
from database import async_session_maker
from models.captain_video import CaptainVideo
from services.broker import BrokerMessage, BrokerPublishError, HttpBroker, RqRelayBroker, is_loopback_url
from services.normalization import NormalizationJob, run_normalization
from services.object_store import ObjectStore
from services.video_state import (
    WorkerResult,
    apply_worker_result,
    claim_for_processing,
    get_video,
    revert_to_queued,
)

logger = logging.getLogger(__name__)

WORKER_PATH = "/videos/worker-normalize"
CALLBACK_PATH = "/videos/normalize-callback"


class DispatchError(RuntimeError):
    """Hand-off failed before any worker started processing."""


@dataclass
class DispatchJob:
    video_id: str
    original_url: str
    trim_start_sec: float = 0.0
    processed_duration_sec: Optional[float] = None

    @classmethod
    def from_video(cls, video: CaptainVideo) -> "DispatchJob":
        # Client-trimmed uploads already start at the window start.
        seek = float(video.trim_start_sec or 0.0) if video.did_fallback else 0.0
        return cls(
            video_id=video.id,
            original_url=video.original_url,
            trim_start_sec=seek,
            processed_duration_sec=video.processed_duration_sec,
        )

    def to_normalization_job(self) -> NormalizationJob:
        return NormalizationJob(
            video_id=self.video_id,
            original_url=self.original_url,
            trim_start_sec=self.trim_start_sec,
            processed_duration_sec=self.processed_duration_sec,
        )


@dataclass
class DispatchResult:
    backend: str
    result: Optional[WorkerResult] = None
    reference: Optional[str] = None


@dataclass
class DispatchOutcome:
    video_id: str
    status: str
    backend: Optional[str] = None
    process_status: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload = {
            "video_id": self.video_id,
            "status": self.status,
            "backend": self.backend,
            "process_status": self.process_status,
            "error": self.error,
        }
        payload.update(self.extra)
        return payload


class DispatchBackend(Protocol):
    name: str

    async def dispatch(self, job: DispatchJob) -> DispatchResult: ...


class BrokerDispatchBackend:
    """Publish the job; the worker result arrives later on the callback endpoint."""

    name = "broker"

    def __init__(
        self,
        broker,
        worker_url: str,
        callback_url: str,
        worker_secret: str = "",
        signing_key: str = "",
        retries: int = 2,
    ):
        self.broker = broker
        self.worker_url = worker_url
        self.callback_url = callback_url
        self.worker_secret = worker_secret
        self.signing_key = signing_key
        self.retries = retries

    async def dispatch(self, job: DispatchJob) -> DispatchResult:
        message = BrokerMessage(
            target_url=self.worker_url,
            body=json.dumps(job.to_normalization_job().to_payload()),
            callback_url=self.callback_url,
            forward_authorization=f"Bearer {self.worker_secret}" if self.worker_secret else None,
            signing_key=self.signing_key or None,
            retries=self.retries,
            message_id=f"video:{job.video_id}:{uuid.uuid4().hex[:12]}",
        )
        try:
            reference = await self.broker.publish(message)
        except BrokerPublishError as exc:
            raise DispatchError(str(exc)) from exc
        return DispatchResult(backend=self.name, reference=reference)


class ExternalWorkerBackend:
    """Call the worker over HTTP and wait for its JSON result inline."""

    name = "external_worker"

    def __init__(self, worker_url: str, worker_secret: str = "", timeout: float = 300.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.worker_url = worker_url
        self.worker_secret = worker_secret
        self.timeout = timeout
        self.transport = transport

    async def dispatch(self, job: DispatchJob) -> DispatchResult:
        headers = {"Content-Type": "application/json"}
        if self.worker_secret:
            headers["Authorization"] = f"Bearer {self.worker_secret}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.worker_url, json=job.to_normalization_job().to_payload(), headers=headers)
        except httpx.HTTPError as exc:
            raise DispatchError(f"worker_unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        # A worker-reported outcome (even a 500) means processing ran.
        if isinstance(payload, dict) and ("success" in payload or "ok" in payload):
            result = WorkerResult.from_payload(payload)
            result.video_id = result.video_id or job.video_id
            if result.success is not None:
                return DispatchResult(backend=self.name, result=result)
        if response.status_code >= 300:
            raise DispatchError(f"worker_status_{response.status_code}")
        raise DispatchError("worker_response_invalid")


class LocalWorkerBackend:
    """Run the normalization in-process."""

    name = "local"

    def __init__(self, store: ObjectStore, config: Settings = default_settings):
        self.store = store
        self.config = config

    async def dispatch(self, job: DispatchJob) -> DispatchResult:
        result = await run_normalization(job.to_normalization_job(), self.store, self.config)
        return DispatchResult(backend=self.name, result=result)


def worker_target_url(config: Settings) -> str:
    return config.EXTERNAL_WORKER_URL or f"{config.PUBLIC_BASE_URL.rstrip('/')}{WORKER_PATH}"


def callback_url(config: Settings) -> str:
    return f"{config.PUBLIC_BASE_URL.rstrip('/')}{CALLBACK_PATH}"


def build_dispatch_backend(config: Settings, store: ObjectStore) -> DispatchBackend:
    """Pick the backend once from configuration."""
    broker_url = (config.BROKER_URL or "").strip()
    target = worker_target_url(config)

    if broker_url.startswith(("redis://", "rediss://")):
        broker = RqRelayBroker(broker_url)
    elif broker_url and config.BROKER_TOKEN and not is_loopback_url(target):
        broker = HttpBroker(broker_url, config.BROKER_TOKEN)
    else:
        broker = None
        if broker_url and config.BROKER_TOKEN:
            logger.warning("Broker disabled: worker target %s is a loopback address", target)

    if broker is not None:
        logger.info("Dispatch backend: broker (%s) -> %s", broker.name, target)
        return BrokerDispatchBackend(
            broker,
            worker_url=target,
            callback_url=callback_url(config),
            worker_secret=config.VIDEO_WORKER_SECRET,
            signing_key=config.BROKER_CURRENT_SIGNING_KEY,
            retries=config.BROKER_RETRIES,
        )
    if config.EXTERNAL_WORKER_URL:
        logger.info("Dispatch backend: external worker -> %s", config.EXTERNAL_WORKER_URL)
        return ExternalWorkerBackend(
            config.EXTERNAL_WORKER_URL,
            worker_secret=config.VIDEO_WORKER_SECRET,
            timeout=config.DISPATCH_TIMEOUT_SECONDS,
        )
    logger.info("Dispatch backend: local in-process worker")
    return LocalWorkerBackend(store, config)


async def dispatch_video(
    video_id: str,
    backend: DispatchBackend,
    session_maker: Optional[async_sessionmaker] = None,
) -> DispatchOutcome:
    """Claim a queued video and hand it off; failures before the worker starts re-queue it."""
    maker = session_maker or async_session_maker

    async with maker() as db:
        video = await get_video(db, video_id)
        if video is None:
            return DispatchOutcome(video_id=video_id, status="not_found")
        if video.process_status != "queued":
            return DispatchOutcome(video_id=video_id, status="skipped", process_status=video.process_status)
        job = DispatchJob.from_video(video)
        if not await claim_for_processing(db, video_id):
            return DispatchOutcome(video_id=video_id, status="skipped", process_status="processing")

    try:
        handed_off = await backend.dispatch(job)
    except Exception as exc:
        if isinstance(exc, DispatchError):
            logger.warning("Dispatch of video %s via %s failed: %s", video_id, backend.name, exc)
        else:
            logger.exception("Unexpected dispatch failure for video %s via %s", video_id, backend.name)
        async with maker() as db:
            await revert_to_queued(db, video_id, exc)
        return DispatchOutcome(
            video_id=video_id,
            status="dispatch_failed",
            backend=backend.name,
            process_status="queued",
            error=str(exc)[:300],
        )

    if handed_off.result is None:
        return DispatchOutcome(
            video_id=video_id,
            status="dispatched",
            backend=backend.name,
            process_status="processing",
            extra={"reference": handed_off.reference},
        )

    async with maker() as db:
        video = await get_video(db, video_id)
        if video is None:
            return DispatchOutcome(video_id=video_id, status="not_found", backend=backend.name)
        outcome = await apply_worker_result(db, video, handed_off.result)
        return DispatchOutcome(
            video_id=video_id,
            status="completed",
            backend=backend.name,
            process_status=outcome.video.process_status,
            error=outcome.video.error_message,
            extra={"idempotent": outcome.idempotent},
        )
