from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.future import select

from config import settings
from conftest import RecordingBackend, auth_headers, load_video, seed_video
from main import app
from models.video_telemetry_event import VideoTelemetryEvent
from services.dispatch import DispatchError
from services.video_state import WorkerResult

OWNER = "captain-1"
WORKER_SECRET = "worker-secret-123"


class FailingBackend:
    name = "broker"

    async def dispatch(self, job):
        raise DispatchError("broker_status_503")


@pytest.fixture
def worker_secret(monkeypatch):
    monkeypatch.setattr(settings, "VIDEO_WORKER_SECRET", WORKER_SECRET)
    return {"Authorization": f"Bearer {WORKER_SECRET}"}


@pytest.mark.asyncio
async def test_list_and_get_are_owner_scoped(pipeline, session_maker):
    client, _ = pipeline
    mine = await seed_video(session_maker, OWNER, process_status="ready")
    await seed_video(session_maker, OWNER)
    theirs = await seed_video(session_maker, "captain-2")

    listing = await client.get("/videos", headers=auth_headers(OWNER))
    own = await client.get(f"/videos/{mine}", headers=auth_headers(OWNER))
    foreign = await client.get(f"/videos/{theirs}", headers=auth_headers(OWNER))
    missing = await client.get("/videos/nope", headers=auth_headers(OWNER))

    assert listing.status_code == 200
    assert listing.json()["count"] == 2
    assert {video["owner_id"] for video in listing.json()["videos"]} == {OWNER}
    assert own.json()["process_status"] == "ready"
    assert foreign.status_code == 403
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "not_found"


@pytest.mark.asyncio
async def test_delete_removes_record_and_stored_objects(pipeline, session_maker):
    client, store = pipeline
    original_key = f"captains/{OWNER}/media/original/1-abc-clip.mp4"
    normalized_key = "captain-videos/normalized/to-delete-720p.mp4"
    await store.put(original_key, b"original", content_type="video/mp4")
    await store.put(normalized_key, b"normalized", content_type="video/mp4")
    video_id = await seed_video(
        session_maker, OWNER, blob_key=original_key, normalized_blob_key=normalized_key, process_status="ready"
    )

    foreign = await client.delete(f"/videos/{video_id}", headers=auth_headers("captain-2"))
    resp = await client.delete(f"/videos/{video_id}", headers=auth_headers(OWNER))

    assert foreign.status_code == 403
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "deleted": video_id}
    assert await load_video(session_maker, video_id) is None
    assert not (store.root / original_key).exists()
    assert not (store.root / normalized_key).exists()


@pytest.mark.asyncio
async def test_requeue_only_moves_failed_videos(pipeline, session_maker):
    client, _ = pipeline
    video_id = await seed_video(session_maker, OWNER, process_status="failed", error_message="decoder crashed")

    first = await client.post(f"/videos/{video_id}/requeue", headers=auth_headers(OWNER))
    second = await client.post(f"/videos/{video_id}/requeue", headers=auth_headers(OWNER))

    assert first.status_code == 200
    assert first.json()["process_status"] == "queued"
    assert first.json()["error_message"] is None
    assert [job.video_id for job in app.state.dispatcher.jobs] == [video_id]
    assert (await load_video(session_maker, video_id)).process_status == "processing"
    assert second.status_code == 409
    assert second.json()["detail"]["error"] == "not_failed"


@pytest.mark.asyncio
async def test_manual_dispatch_with_worker_secret(pipeline, session_maker, worker_secret):
    client, _ = pipeline
    video_id = await seed_video(session_maker, OWNER)

    app.state.dispatcher = FailingBackend()
    failed = await client.post(f"/videos/{video_id}/dispatch", headers=worker_secret)
    app.state.dispatcher = RecordingBackend("broker")
    dispatched = await client.post(f"/videos/{video_id}/dispatch", headers=worker_secret)
    skipped = await client.post(f"/videos/{video_id}/dispatch", headers=auth_headers(OWNER))

    assert failed.status_code == 502
    assert failed.json()["detail"] == {"error": "dispatch_failed", "message": "broker_status_503"}
    assert dispatched.status_code == 200
    assert dispatched.json()["status"] == "dispatched"
    assert dispatched.json()["reference"] == "ref-1"
    assert skipped.json()["skipped"] is True
    video = await load_video(session_maker, video_id)
    assert video.dispatch_attempts == 2
    assert video.process_status == "processing"


@pytest.mark.asyncio
async def test_worker_endpoint_requires_secret_and_valid_job(pipeline, worker_secret):
    client, _ = pipeline
    job = {"videoId": "v1", "originalUrl": "http://test/blobs/captains/captain-1/media/original/a.mp4"}

    unauthorized = await client.post("/videos/worker-normalize", json=job)
    bad_job = await client.post("/videos/worker-normalize", json={"videoId": "v1"}, headers=worker_secret)

    assert unauthorized.status_code == 401
    assert bad_job.status_code == 400
    assert bad_job.json()["detail"]["error"] == "invalid_job"


@pytest.mark.asyncio
async def test_worker_endpoint_reports_result(pipeline, worker_secret):
    client, _ = pipeline
    job = {"videoId": "v1", "originalUrl": "http://test/blobs/a.mp4", "trimStartSec": 4}
    success = WorkerResult(video_id="v1", success=True, ready_url="http://test/blobs/captain-videos/normalized/v1-720p.mp4")
    failure = WorkerResult(video_id="v1", success=False, error="transcode_failed_all_attempts")

    with patch("routers.worker.run_normalization", AsyncMock(side_effect=[success, failure])) as run:
        ok = await client.post("/videos/worker-normalize", json=job, headers=worker_secret)
        failed = await client.post("/videos/worker-normalize", json=job, headers=worker_secret)

    assert ok.status_code == 200
    assert ok.json()["readyUrl"].endswith("v1-720p.mp4")
    assert failed.status_code == 500
    assert failed.json()["videoId"] == "v1"
    assert failed.json()["success"] is False
    assert failed.json()["error"] == "transcode_failed_all_attempts"
    assert run.await_args_list[0].args[0].trim_start_sec == 4.0


@pytest.mark.asyncio
async def test_upload_analytics_records_event(pipeline, session_maker):
    client, _ = pipeline
    resp = await client.post(
        "/videos/analytics",
        json={"video_id": "v1", "file_name": "clip.mp4", "size_bytes": 1024, "did_fallback": True},
        headers=auth_headers(OWNER),
    )

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert "short_video_upload_fallback" in resp.json()["counters"]
    async with session_maker() as db:
        events = (await db.execute(select(VideoTelemetryEvent))).scalars().all()
    assert [(event.event_name, event.status, event.entity_id) for event in events] == [
        ("short_video_upload", "fallback", "v1")
    ]


@pytest.mark.asyncio
async def test_health_probes(pipeline):
    client, _ = pipeline
    live = await client.get("/health/live")
    ready = await client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert ready.status_code == 200
    assert ready.json() == {"ready": True}
