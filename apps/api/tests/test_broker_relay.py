import json
from dataclasses import asdict
from unittest.mock import MagicMock, patch

import httpx
import pytest

from services.broker import BrokerMessage, deliver_broker_job
from services.callbacks import decode_envelope
from services.signatures import verify_signature

WORKER_URL = "https://worker.example.com/videos/worker-normalize"
CALLBACK_URL = "https://api.example.com/videos/normalize-callback"
SIGNING_KEY = "relay-signing-key"


def _message(**overrides):
    message = BrokerMessage(
        target_url=WORKER_URL,
        body=json.dumps({"videoId": "v1", "originalUrl": "https://cdn.test/a.mp4"}),
        callback_url=CALLBACK_URL,
        forward_authorization="Bearer worker-secret",
        signing_key=SIGNING_KEY,
        message_id="video:v1:abc",
    )
    data = asdict(message)
    data.update(overrides)
    return data


def _response(url, status_code, payload):
    return httpx.Response(status_code, json=payload, request=httpx.Request("POST", url))


def test_relay_delivers_signed_worker_result():
    calls = []

    def fake_post(url, content, headers, timeout):
        calls.append((url, content, headers))
        if url == WORKER_URL:
            return _response(url, 200, {"videoId": "v1", "success": True, "readyUrl": "https://cdn.test/v1-720p.mp4"})
        return _response(url, 200, {"ok": True})

    with patch("services.broker.httpx.post", side_effect=fake_post), \
         patch("services.broker.get_current_job", return_value=None):
        status = deliver_broker_job(_message())

    assert status == 200
    (worker_url, _, worker_headers), (callback_url, callback_body, callback_headers) = calls
    assert worker_url == WORKER_URL
    assert worker_headers["Authorization"] == "Bearer worker-secret"
    assert callback_url == CALLBACK_URL
    verify_signature(callback_body, (SIGNING_KEY,), jwt_signature=callback_headers["Upstash-Signature"])
    shape, inner = decode_envelope(json.loads(callback_body))
    assert shape == "broker"
    assert inner["success"] is True
    assert json.loads(callback_body)["sourceMessageId"] == "video:v1:abc"


def test_worker_error_is_retried_while_attempts_remain():
    post = MagicMock(return_value=_response(WORKER_URL, 503, {"error": "busy"}))

    with patch("services.broker.httpx.post", post), \
         patch("services.broker.get_current_job", return_value=MagicMock(retries_left=2)):
        with pytest.raises(RuntimeError, match="worker_status_503"):
            deliver_broker_job(_message())

    assert post.call_count == 1


def test_final_worker_error_is_delivered_as_failure():
    calls = []

    def fake_post(url, content, headers, timeout):
        calls.append((url, content))
        if url == WORKER_URL:
            return _response(url, 500, {"videoId": "v1", "success": False, "error": "decoder crashed"})
        return _response(url, 200, {"ok": True})

    with patch("services.broker.httpx.post", side_effect=fake_post), \
         patch("services.broker.get_current_job", return_value=MagicMock(retries_left=0)):
        status = deliver_broker_job(_message(signing_key=None))

    assert status == 500
    _, inner = decode_envelope(json.loads(calls[1][1]))
    assert inner == {"videoId": "v1", "success": False, "error": "decoder crashed"}


def test_unreachable_worker_reports_failure_after_last_attempt():
    calls = []

    def fake_post(url, content, headers, timeout):
        if url == WORKER_URL:
            raise httpx.ConnectError("connection refused")
        calls.append(content)
        return _response(url, 200, {"ok": True})

    with patch("services.broker.httpx.post", side_effect=fake_post), \
         patch("services.broker.get_current_job", return_value=MagicMock(retries_left=1)):
        with pytest.raises(httpx.ConnectError):
            deliver_broker_job(_message())
    assert calls == []

    with patch("services.broker.httpx.post", side_effect=fake_post), \
         patch("services.broker.get_current_job", return_value=None):
        status = deliver_broker_job(_message())

    assert status == 599
    _, inner = decode_envelope(json.loads(calls[0]))
    assert inner["videoId"] == "v1"
    assert inner["success"] is False
    assert inner["error"].startswith("worker_unreachable")
