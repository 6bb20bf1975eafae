"""Message broker publishers for queued normalization jobs.

Two implementations share ``publish(BrokerMessage)``:

* ``HttpBroker`` talks to a QStash-style HTTP broker that forwards the job body
  to the worker and POSTs the worker response to the callback URL.
* ``RqRelayBroker`` plays the same role over Redis/RQ for self-hosted setups;
  ``deliver_broker_job`` runs in the RQ worker process.
"""

from __future__ import annotations

import asyncio
import base64
import ipaddress
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
from rq import Queue, Retry, get_current_job

from services.signatures import sign_body
from services.video_queue import get_video_queue

logger = logging.getLogger(__name__)

RELAY_RETRY_INTERVALS = [10, 30, 120, 300]
LOOPBACK_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}


class BrokerPublishError(RuntimeError):
    """Raised when the broker did not accept a message."""


@dataclass
class BrokerMessage:
    target_url: str
    body: str
    callback_url: str
    forward_authorization: Optional[str] = None
    signing_key: Optional[str] = None
    retries: int = 2
    message_id: Optional[str] = None


def is_loopback_url(url: str) -> bool:
    """True for URLs a hosted broker could never reach."""
    host = (urlparse(url if "://" in url else f"https://{url}").hostname or "").lower()
    if not host:
        return False
    if host in LOOPBACK_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_unspecified


def _with_scheme(url: str) -> str:
    return url if url.startswith(("http://", "https://")) else f"https://{url}"


class HttpBroker:
    """Publish to ``{base_url}/v2/publish/{destination}`` (destination appended raw, not encoded)."""

    name = "http"

    def __init__(self, base_url: str, token: str, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not base_url or not token:
            raise ValueError("HTTP broker requires BROKER_URL and BROKER_TOKEN")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def publish_url(self, target_url: str) -> str:
        return f"{self.base_url}/v2/publish/{_with_scheme(target_url)}"

    async def publish(self, message: BrokerMessage) -> Optional[str]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Callback": message.callback_url,
            "Upstash-Failure-Callback": message.callback_url,
            "Upstash-Retries": str(max(int(message.retries), 0)),
        }
        if message.forward_authorization:
            headers["Upstash-Forward-Authorization"] = message.forward_authorization

        url = self.publish_url(message.target_url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=message.body, headers=headers)
        except httpx.HTTPError as exc:
            raise BrokerPublishError(f"broker_unreachable: {exc}") from exc

        if response.status_code >= 300:
            logger.warning("Broker publish failed status=%s body=%s", response.status_code, response.text[:500])
            raise BrokerPublishError(f"broker_status_{response.status_code}")

        try:
            message_id = response.json().get("messageId")
        except (ValueError, AttributeError):
            message_id = None
        logger.info("Broker accepted job for %s message_id=%s", message.target_url, message_id)
        return message_id


class RqRelayBroker:
    """Redis/RQ relay: the RQ worker calls the target and POSTs a signed callback."""

    name = "rq"

    def __init__(self, redis_url: str, queue: Optional[Queue] = None):
        self.redis_url = redis_url
        self._queue = queue

    def _get_queue(self) -> Queue:
        if self._queue is None:
            self._queue = get_video_queue(self.redis_url)
        return self._queue

    def _enqueue(self, message: BrokerMessage) -> str:
        retries = max(int(message.retries), 0)
        job = self._get_queue().enqueue(
            "services.broker.deliver_broker_job",
            asdict(message),
            job_id=message.message_id,
            retry=Retry(max=retries, interval=RELAY_RETRY_INTERVALS[:retries] or [10]) if retries else None,
            job_timeout=1800,
            result_ttl=86400,
            failure_ttl=86400,
        )
        return job.id

    async def publish(self, message: BrokerMessage) -> Optional[str]:
        try:
            job_id = await asyncio.to_thread(self._enqueue, message)
        except Exception as exc:
            raise BrokerPublishError(f"relay_enqueue_failed: {exc}") from exc
        logger.info("Relay queued job %s for %s", job_id, message.target_url)
        return job_id


def _retries_left() -> int:
    job = get_current_job()
    return int(getattr(job, "retries_left", 0) or 0) if job else 0


def _video_id_from_body(body: str) -> Optional[str]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    return payload.get("videoId") if isinstance(payload, dict) else None


def build_callback_envelope(status_code: int, response_body: str, message_id: Optional[str] = None) -> str:
    """Broker-style callback body: the worker response travels base64 encoded."""
    envelope: Dict[str, Any] = {
        "status": status_code,
        "body": base64.b64encode(response_body.encode("utf-8")).decode("ascii"),
    }
    if message_id:
        envelope["sourceMessageId"] = message_id
    return json.dumps(envelope)


def deliver_broker_job(message: Dict[str, Any], timeout: float = 900.0) -> int:
    """RQ entrypoint: call the worker, then deliver its response to the callback URL."""
    msg = BrokerMessage(**message)
    headers = {"Content-Type": "application/json"}
    if msg.forward_authorization:
        headers["Authorization"] = msg.forward_authorization

    try:
        response = httpx.post(msg.target_url, content=msg.body, headers=headers, timeout=timeout)
        status_code, response_body = response.status_code, response.text
    except httpx.HTTPError as exc:
        if _retries_left() > 0:
            raise
        status_code = 599
        response_body = json.dumps(
            {"videoId": _video_id_from_body(msg.body), "success": False, "error": f"worker_unreachable: {exc}"}
        )

    if status_code >= 500 and _retries_left() > 0:
        raise RuntimeError(f"worker_status_{status_code}")

    callback_body = build_callback_envelope(status_code, response_body, msg.message_id)
    callback_headers = {"Content-Type": "application/json"}
    if msg.signing_key:
        callback_headers["Upstash-Signature"] = sign_body(callback_body, msg.signing_key, url=msg.callback_url)
    callback = httpx.post(msg.callback_url, content=callback_body, headers=callback_headers, timeout=30.0)
    callback.raise_for_status()
    logger.info("Relay delivered worker status=%s to callback status=%s", status_code, callback.status_code)
    return status_code
