from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from config import Settings
from conftest import load_video
from services.dispatch import LocalWorkerBackend, dispatch_video
from services.ingress import FinishRequest, create_video_record
from services.media_paths import normalized_video_key, video_id_from_url, worker_thumbnail_key
from services.normalization import NormalizationError, NormalizationJob, download_original, run_normalization
from services.object_store import LocalObjectStore
from services.transcode import TranscodeError, VideoProbe

ORIGINAL_URL = "http://test/blobs/captains/captain-1/media/original/1-long.mp4"


def _fake_probe(path):
    if str(path).endswith("-in.mp4"):
        return VideoProbe(duration_sec=45.0, width=1920, height=1080)
    return VideoProbe(duration_sec=30.0, width=1280, height=720)


def _fake_normalize(input_path, output_path, **kwargs):
    Path(output_path).write_bytes(b"normalized-h264")
    return "scale=1280:720:force_original_aspect_ratio=decrease"


def _fake_thumbnail(input_path, output_path, at_sec=1.0):
    Path(output_path).write_bytes(b"\xff\xd8thumb")
    return output_path


async def _fake_download(url, destination):
    Path(destination).write_bytes(b"original-1080p")
    return destination


@pytest.fixture
def worker_env(tmp_path):
    config = Settings(WORKER_TMP_DIR=str(tmp_path / "work"), MAX_CLIP_SECONDS=30, TARGET_MAX_WIDTH=1280, TARGET_MAX_HEIGHT=720)
    store = LocalObjectStore(root=str(tmp_path / "blobs"), base_url="http://test")
    return config, store


async def _ingest_long_clip(session_maker, store, config):
    request = FinishRequest(
        owner_id="captain-1",
        video_url=ORIGINAL_URL,
        blob_key="captains/captain-1/media/original/1-long.mp4",
        start_sec=0.0,
        width=1920,
        height=1080,
        original_duration_sec=45.0,
    )
    async with session_maker() as db:
        return await create_video_record(db, request, store=store, worker_configured=False, config=config)


@pytest.mark.asyncio
async def test_long_1080p_upload_ends_ready_with_720p_output(session_maker, worker_env):
    config, store = worker_env
    video = await _ingest_long_clip(session_maker, store, config)
    assert video.process_status == "queued"

    with patch("services.normalization.download_original", side_effect=_fake_download), \
         patch("services.normalization.probe_video_quietly", side_effect=_fake_probe), \
         patch("services.normalization.normalize_clip", side_effect=_fake_normalize) as normalize, \
         patch("services.normalization.extract_thumbnail", side_effect=_fake_thumbnail):
        outcome = await dispatch_video(video.id, LocalWorkerBackend(store, config), session_maker)

    assert outcome.status == "completed"
    kwargs = normalize.call_args.kwargs
    assert kwargs["seek_sec"] == 0.0
    assert kwargs["max_duration_sec"] == 30
    assert (kwargs["max_width"], kwargs["max_height"]) == (1280, 720)

    ready = await load_video(session_maker, video.id)
    assert ready.process_status == "ready"
    assert ready.ready_720p_url == store.public_url(normalized_video_key(video.id))
    assert ready.thumbnail_url == store.public_url(worker_thumbnail_key(video.id))
    assert video_id_from_url(ready.ready_720p_url) == video.id
    assert (ready.processed_width, ready.processed_height) == (1280, 720)
    assert ready.processed_duration_sec <= 30
    assert (store.root / normalized_video_key(video.id)).read_bytes() == b"normalized-h264"
    assert list((Path(config.WORKER_TMP_DIR)).iterdir()) == []


@pytest.mark.asyncio
async def test_thumbnail_failure_still_ends_ready(session_maker, worker_env):
    config, store = worker_env
    video = await _ingest_long_clip(session_maker, store, config)

    with patch("services.normalization.download_original", side_effect=_fake_download), \
         patch("services.normalization.probe_video_quietly", side_effect=_fake_probe), \
         patch("services.normalization.normalize_clip", side_effect=_fake_normalize), \
         patch("services.normalization.extract_thumbnail", side_effect=TranscodeError("thumbnail_not_written")):
        await dispatch_video(video.id, LocalWorkerBackend(store, config), session_maker)

    ready = await load_video(session_maker, video.id)
    assert ready.process_status == "ready"
    assert ready.ready_720p_url is not None
    assert ready.thumbnail_url is None


@pytest.mark.asyncio
async def test_seek_is_clamped_inside_the_source(worker_env):
    config, store = worker_env
    job = NormalizationJob(video_id="v1", original_url=ORIGINAL_URL, trim_start_sec=120.0, processed_duration_sec=12.0)

    with patch("services.normalization.download_original", side_effect=_fake_download), \
         patch("services.normalization.probe_video_quietly", side_effect=_fake_probe), \
         patch("services.normalization.normalize_clip", side_effect=_fake_normalize) as normalize, \
         patch("services.normalization.extract_thumbnail", side_effect=_fake_thumbnail):
        result = await run_normalization(job, store, config)

    assert result.success is True
    assert normalize.call_args.kwargs["seek_sec"] == 44.5
    assert normalize.call_args.kwargs["max_duration_sec"] == 12.0


@pytest.mark.asyncio
async def test_download_failure_is_reported_not_raised(worker_env):
    config, store = worker_env
    job = NormalizationJob(video_id="v1", original_url=ORIGINAL_URL)

    with patch("services.normalization.download_original", side_effect=RuntimeError("download_failed: status=404")):
        result = await run_normalization(job, store, config)

    assert result.success is False
    assert result.error == "download_failed: status=404"
    assert result.to_payload()["videoId"] == "v1"


@pytest.mark.asyncio
async def test_download_original_streams_to_disk(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"x" * 4096)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    with patch("services.normalization.httpx.AsyncClient", side_effect=client_factory):
        path = await download_original(ORIGINAL_URL, tmp_path / "in" / "clip.mp4")

    assert path.read_bytes() == b"x" * 4096


def test_job_payload_validation():
    with pytest.raises(NormalizationError):
        NormalizationJob.from_payload({"videoId": "v1"})

    camel = NormalizationJob.from_payload({"videoId": "v1", "originalUrl": "u", "trimStartSec": "-4"})
    snake = NormalizationJob.from_payload({"video_id": "v2", "original_url": "u", "trim_start_sec": 99999})
    normal = NormalizationJob.from_payload({"videoId": "v3", "originalUrl": "u", "trimStartSec": 7.5, "processedDurationSec": 20})

    assert camel.trim_start_sec == 0.0
    assert snake.video_id == "v2" and snake.trim_start_sec == 0.0
    assert normal.trim_start_sec == 7.5 and normal.processed_duration_sec == 20.0
