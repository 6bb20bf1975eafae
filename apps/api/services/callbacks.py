"""Broker callback receiver: verify, unwrap, recover the id, apply idempotently."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_session_maker
from services.media_paths import video_id_from_url
from services.signatures import SignatureError, verify_signature
from services.video_state import WorkerResult, apply_worker_result, get_video

logger = logging.getLogger(__name__)

OUTCOME_KEYS = ("success", "ok")
NESTED_KEYS = ("response", "result", "data")


class EnvelopeError(ValueError):
    """Raised when a callback body matches no known envelope shape."""


def _has_outcome(payload: Dict[str, Any]) -> bool:
    return any(key in payload for key in OUTCOME_KEYS)


def _decode_broker(outer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """``{"status": 200, "body": "<base64 JSON>"}`` as posted by the broker."""
    if not isinstance(outer.get("body"), str) or not ("status" in outer or "sourceMessageId" in outer):
        return None
    try:
        inner = json.loads(base64.b64decode(outer["body"], validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise EnvelopeError(f"broker_body_undecodable: {exc}") from exc
    if not isinstance(inner, dict):
        raise EnvelopeError("broker_body_not_object")

    status = outer.get("status")
    if not _has_outcome(inner) and isinstance(status, int) and status >= 300:
        inner = {**inner, "success": False, "error": inner.get("error") or f"worker_status_{status}"}
    return inner


def _decode_nested(outer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if _has_outcome(outer):
        return None
    for key in NESTED_KEYS:
        if isinstance(outer.get(key), dict):
            return outer[key]
    return None


def _decode_direct(outer: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return outer


# Tried in order; the first decoder returning a payload wins.
ENVELOPE_DECODERS: Sequence[Tuple[str, Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]]] = (
    ("broker", _decode_broker),
    ("nested", _decode_nested),
    ("direct", _decode_direct),
)


def decode_envelope(outer: Any) -> Tuple[str, Dict[str, Any]]:
    """Return ``(shape, inner_payload)`` for a parsed callback body."""
    if not isinstance(outer, dict):
        raise EnvelopeError("callback_body_not_object")
    for shape, decoder in ENVELOPE_DECODERS:
        inner = decoder(outer)
        if inner is not None:
            return shape, inner
    raise EnvelopeError("unknown_envelope")


def recover_video_id(result: WorkerResult) -> Optional[str]:
    return result.video_id or video_id_from_url(result.ready_url) or video_id_from_url(result.thumbnail_url)


@dataclass
class CallbackResponse:
    status_code: int
    body: Dict[str, Any]


def _error(status_code: int, code: str, message: str) -> CallbackResponse:
    return CallbackResponse(status_code=status_code, body={"error": code, "message": message})


class CallbackReceiver:
    """Applies worker results delivered by a broker.

    ``signature_mode`` is ``"strict"`` (reject unverifiable calls with 401) or
    ``"soft"`` (log and continue, tolerating broker misconfiguration at the
    cost of authenticity).
    """

    def __init__(
        self,
        signature_mode: str = "soft",
        signing_keys: Sequence[str] = (),
        session_maker: Optional[async_sessionmaker] = None,
    ):
        if signature_mode not in {"soft", "strict"}:
            raise ValueError(f"Unknown signature mode: {signature_mode}")
        self.signature_mode = signature_mode
        self.signing_keys = tuple(key for key in signing_keys if key)
        self._session_maker = session_maker

    @property
    def strict(self) -> bool:
        return self.signature_mode == "strict"

    def check_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[CallbackResponse]:
        jwt_signature = headers.get("upstash-signature")
        legacy_hex = headers.get("x-signature")
        if not self.strict and not (self.signing_keys and (jwt_signature or legacy_hex)):
            return None
        try:
            verify_signature(raw_body, self.signing_keys, jwt_signature=jwt_signature, legacy_hex=legacy_hex)
        except SignatureError as exc:
            if self.strict:
                logger.warning("Rejected callback with bad signature: %s", exc)
                return _error(401, "invalid_signature", str(exc))
            logger.warning("Callback signature invalid (soft mode, continuing): %s", exc)
        return None

    async def handle(self, raw_body: Union[bytes, str], headers: Mapping[str, str]) -> CallbackResponse:
        raw = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
        lowered = {str(key).lower(): value for key, value in headers.items()}

        rejected = self.check_signature(raw, lowered)
        if rejected is not None:
            return rejected

        try:
            outer = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return _error(400, "invalid_json", "Callback body is not valid JSON.")
        try:
            shape, inner = decode_envelope(outer)
        except EnvelopeError as exc:
            return _error(400, "invalid_envelope", str(exc))

        result = WorkerResult.from_payload(inner)
        video_id = recover_video_id(result)
        if not video_id:
            return _error(400, "missing_video_id", "No videoId and no recognizable output URL in callback.")
        result.video_id = video_id

        maker = self._session_maker or async_session_maker
        async with maker() as db:
            video = await get_video(db, video_id)
            if video is None:
                return _error(404, "not_found", f"Video {video_id} not found.")
            if result.success is None:
                return _error(400, "ambiguous_result", "Callback carries neither success nor ok.")

            outcome = await apply_worker_result(db, video, result)
            logger.info(
                "Callback (%s) for video %s applied=%s idempotent=%s status=%s",
                shape,
                video_id,
                outcome.applied,
                outcome.idempotent,
                outcome.video.process_status,
            )
            return CallbackResponse(
                status_code=200,
                body={
                    "ok": True,
                    "videoId": video_id,
                    "processStatus": outcome.video.process_status,
                    "applied": outcome.applied,
                    "idempotent": outcome.idempotent,
                },
            )
