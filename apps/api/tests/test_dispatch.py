import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from config import Settings
from conftest import load_video, seed_video
from services.broker import BrokerMessage, HttpBroker, RqRelayBroker, is_loopback_url
from services.dispatch import (
    BrokerDispatchBackend,
    DispatchError,
    DispatchJob,
    ExternalWorkerBackend,
    LocalWorkerBackend,
    build_dispatch_backend,
    dispatch_video,
)
from services.object_store import LocalObjectStore
from services.transcode import TranscodeError, VideoProbe

WORKER_URL = "https://worker.example.com/videos/worker-normalize"
CALLBACK_URL = "https://api.example.com/videos/normalize-callback"


class FailingBackend:
    name = "broker"

    def __init__(self, exc):
        self.exc = exc

    async def dispatch(self, job):
        raise self.exc


@pytest.mark.asyncio
async def test_dispatch_transport_error_returns_video_to_queued(session_maker):
    video_id = await seed_video(session_maker)

    outcome = await dispatch_video(video_id, FailingBackend(DispatchError("broker_status_503")), session_maker)

    assert outcome.status == "dispatch_failed"
    assert outcome.process_status == "queued"
    video = await load_video(session_maker, video_id)
    assert video.process_status == "queued"
    assert video.last_dispatch_error == "broker_status_503"
    assert video.error_message is None
    assert video.dispatch_attempts == 1


@pytest.mark.asyncio
async def test_unreachable_external_worker_is_a_dispatch_failure(session_maker):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    video_id = await seed_video(session_maker)
    backend = ExternalWorkerBackend(WORKER_URL, worker_secret="s3cret", transport=httpx.MockTransport(refuse))

    outcome = await dispatch_video(video_id, backend, session_maker)

    assert outcome.status == "dispatch_failed"
    video = await load_video(session_maker, video_id)
    assert video.process_status == "queued"
    assert video.last_dispatch_error.startswith("worker_unreachable")


@pytest.mark.asyncio
async def test_worker_transcode_exception_fails_the_video(session_maker, tmp_path):
    video_id = await seed_video(session_maker, processed_duration_sec=30.0)
    config = Settings(WORKER_TMP_DIR=str(tmp_path / "work"))
    store = LocalObjectStore(root=str(tmp_path / "blobs"), base_url="http://test")

    async def fake_download(url, destination):
        Path(destination).write_bytes(b"original")
        return destination

    with patch("services.normalization.download_original", side_effect=fake_download), \
         patch("services.normalization.probe_video_quietly", return_value=VideoProbe(45.0, 1920, 1080)), \
         patch("services.normalization.normalize_clip", side_effect=TranscodeError("transcode_failed_all_attempts: moov atom not found")):
        outcome = await dispatch_video(video_id, LocalWorkerBackend(store, config), session_maker)

    assert outcome.status == "completed"
    video = await load_video(session_maker, video_id)
    assert video.process_status == "failed"
    assert "moov atom not found" in video.error_message
    assert video.last_dispatch_error is None
    assert list((tmp_path / "work").iterdir()) == []


@pytest.mark.asyncio
async def test_dispatch_skips_videos_that_are_not_queued(session_maker):
    ready_id = await seed_video(session_maker, process_status="ready", ready_720p_url="https://cdn.test/a.mp4")
    backend = FailingBackend(AssertionError("must not be called"))

    skipped = await dispatch_video(ready_id, backend, session_maker)
    missing = await dispatch_video("does-not-exist", backend, session_maker)

    assert skipped.status == "skipped"
    assert skipped.process_status == "ready"
    assert missing.status == "not_found"


@pytest.mark.asyncio
async def test_external_worker_reported_failure_is_applied(session_maker):
    def handler(request):
        assert request.headers["authorization"] == "Bearer s3cret"
        payload = json.loads(request.content)
        return httpx.Response(500, json={"videoId": payload["videoId"], "success": False, "error": "decoder crashed"})

    video_id = await seed_video(session_maker)
    backend = ExternalWorkerBackend(WORKER_URL, worker_secret="s3cret", transport=httpx.MockTransport(handler))

    outcome = await dispatch_video(video_id, backend, session_maker)

    assert outcome.status == "completed"
    assert outcome.process_status == "failed"
    assert (await load_video(session_maker, video_id)).error_message == "decoder crashed"


@pytest.mark.asyncio
async def test_external_worker_gateway_error_is_a_dispatch_failure(session_maker):
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
    video_id = await seed_video(session_maker)

    outcome = await dispatch_video(video_id, ExternalWorkerBackend(WORKER_URL, transport=transport), session_maker)

    assert outcome.status == "dispatch_failed"
    assert outcome.error == "worker_status_502"
    assert (await load_video(session_maker, video_id)).process_status == "queued"


@pytest.mark.asyncio
async def test_external_worker_success_marks_ready(session_maker):
    ready_url = "https://cdn.test/captain-videos/normalized/x-720p.mp4"

    def handler(request):
        return httpx.Response(200, json={"ok": True, "readyUrl": ready_url, "processedWidth": 1280, "processedHeight": 720})

    video_id = await seed_video(session_maker)
    outcome = await dispatch_video(
        video_id, ExternalWorkerBackend(WORKER_URL, transport=httpx.MockTransport(handler)), session_maker
    )

    assert outcome.process_status == "ready"
    video = await load_video(session_maker, video_id)
    assert video.ready_720p_url == ready_url
    assert video.processed_width == 1280


@pytest.mark.asyncio
async def test_broker_publish_sends_job_and_callback_headers(session_maker):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"messageId": "msg_123"})

    broker = HttpBroker("https://qstash.test/", "broker-token", transport=httpx.MockTransport(handler))
    backend = BrokerDispatchBackend(
        broker, WORKER_URL, CALLBACK_URL, worker_secret="s3cret", signing_key="sig", retries=3
    )
    video_id = await seed_video(session_maker, did_fallback=True, trim_start_sec=7.5)

    outcome = await dispatch_video(video_id, backend, session_maker)

    assert outcome.status == "dispatched"
    assert outcome.extra["reference"] == "msg_123"
    assert captured["url"] == f"https://qstash.test/v2/publish/{WORKER_URL}"
    assert captured["headers"]["authorization"] == "Bearer broker-token"
    assert captured["headers"]["upstash-callback"] == CALLBACK_URL
    assert captured["headers"]["upstash-failure-callback"] == CALLBACK_URL
    assert captured["headers"]["upstash-retries"] == "3"
    assert captured["headers"]["upstash-forward-authorization"] == "Bearer s3cret"
    assert captured["body"]["videoId"] == video_id
    assert captured["body"]["trimStartSec"] == 7.5
    assert (await load_video(session_maker, video_id)).process_status == "processing"


@pytest.mark.asyncio
async def test_broker_rejection_leaves_video_queued(session_maker):
    broker = HttpBroker(
        "https://qstash.test", "bad-token", transport=httpx.MockTransport(lambda request: httpx.Response(401, text="nope"))
    )
    video_id = await seed_video(session_maker)

    outcome = await dispatch_video(video_id, BrokerDispatchBackend(broker, WORKER_URL, CALLBACK_URL), session_maker)

    assert outcome.status == "dispatch_failed"
    assert outcome.error == "broker_status_401"
    assert (await load_video(session_maker, video_id)).process_status == "queued"


@pytest.mark.asyncio
async def test_relay_broker_enqueues_delivery_job():
    queue = MagicMock()
    queue.enqueue.return_value = MagicMock(id="video:v1:abc")
    relay = RqRelayBroker("redis://localhost:6379/1", queue=queue)

    reference = await relay.publish(
        BrokerMessage(target_url=WORKER_URL, body="{}", callback_url=CALLBACK_URL, retries=2, message_id="video:v1:abc")
    )

    assert reference == "video:v1:abc"
    args, kwargs = queue.enqueue.call_args
    assert args[0] == "services.broker.deliver_broker_job"
    assert args[1]["target_url"] == WORKER_URL
    assert kwargs["job_id"] == "video:v1:abc"
    assert kwargs["retry"].max == 2


def test_dispatch_job_seeks_only_for_untrimmed_uploads():
    trimmed = MagicMock(id="a", original_url="u", trim_start_sec=12.0, did_fallback=False, processed_duration_sec=20.0)
    untrimmed = MagicMock(id="b", original_url="u", trim_start_sec=12.0, did_fallback=True, processed_duration_sec=20.0)

    assert DispatchJob.from_video(trimmed).trim_start_sec == 0.0
    assert DispatchJob.from_video(untrimmed).trim_start_sec == 12.0


@pytest.mark.parametrize(
    "overrides,backend_name,broker_name",
    [
        ({"BROKER_URL": "https://qstash.test", "BROKER_TOKEN": "t", "PUBLIC_BASE_URL": "https://api.example.com"}, "broker", "http"),
        ({"BROKER_URL": "https://qstash.test", "BROKER_TOKEN": "t", "PUBLIC_BASE_URL": "http://localhost:8000"}, "local", None),
        ({"BROKER_URL": "https://qstash.test", "BROKER_TOKEN": "t", "PUBLIC_BASE_URL": "http://127.0.0.1:8000", "EXTERNAL_WORKER_URL": "https://worker.example.com/run"}, "broker", "http"),
        ({"BROKER_URL": "redis://localhost:6379/1", "PUBLIC_BASE_URL": "http://localhost:8000"}, "broker", "rq"),
        ({"EXTERNAL_WORKER_URL": WORKER_URL}, "external_worker", None),
        ({}, "local", None),
    ],
)
def test_build_dispatch_backend_selection(tmp_path, overrides, backend_name, broker_name):
    base = {"BROKER_URL": "", "BROKER_TOKEN": "", "EXTERNAL_WORKER_URL": "", "PUBLIC_BASE_URL": "http://localhost:8000"}
    config = Settings(**{**base, **overrides})
    store = LocalObjectStore(root=str(tmp_path), base_url=config.PUBLIC_BASE_URL)

    backend = build_dispatch_backend(config, store)

    assert backend.name == backend_name
    if broker_name:
        assert backend.broker.name == broker_name


def test_loopback_detection():
    assert is_loopback_url("http://localhost:3000/api")
    assert is_loopback_url("http://127.0.0.1/x")
    assert is_loopback_url("http://[::1]:8000/")
    assert is_loopback_url("http://app.localhost/")
    assert not is_loopback_url("https://api.example.com/videos")


@pytest.mark.asyncio
async def test_local_backend_runs_normalization_inline(tmp_path):
    store = LocalObjectStore(root=str(tmp_path), base_url="http://test")
    result = MagicMock(success=True)
    with patch("services.dispatch.run_normalization", AsyncMock(return_value=result)) as run:
        handed_off = await LocalWorkerBackend(store).dispatch(DispatchJob(video_id="v1", original_url="http://test/a.mp4"))

    assert handed_off.result is result
    assert run.await_args.args[0].video_id == "v1"
