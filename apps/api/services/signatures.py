"""Broker callback signing and verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
import uuid
from typing import Iterable, Optional, Sequence, Union

from jose import JWTError, jwt

SIGNATURE_ISSUER = "Upstash"
SIGNATURE_ALGORITHM = "HS256"
SIGNATURE_TTL_SECONDS = 300

Body = Union[str, bytes]


class SignatureError(ValueError):
    """Raised when a callback signature cannot be verified."""


def _as_bytes(body: Body) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def body_digest(body: Body) -> str:
    """Unpadded base64url SHA-256 of the raw body."""
    digest = hashlib.sha256(_as_bytes(body)).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def sign_body(body: Body, signing_key: str, url: str = "", ttl_seconds: int = SIGNATURE_TTL_SECONDS) -> str:
    """Build the JWT a broker attaches as ``Upstash-Signature``."""
    now = int(time.time())
    claims = {
        "iss": SIGNATURE_ISSUER,
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + ttl_seconds,
        "jti": uuid.uuid4().hex,
        "body": body_digest(body),
    }
    return jwt.encode(claims, signing_key, algorithm=SIGNATURE_ALGORITHM)


def legacy_signature(body: Body, signing_key: str) -> str:
    return hmac.new(signing_key.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


def _verify_jwt(token: str, body: Body, key: str) -> None:
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=[SIGNATURE_ALGORITHM],
            issuer=SIGNATURE_ISSUER,
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise SignatureError(f"invalid_jwt: {exc}") from exc

    expected = body_digest(body)
    if str(claims.get("body", "")).rstrip("=") != expected:
        raise SignatureError("body_hash_mismatch")


def verify_signature(
    body: Body,
    signing_keys: Sequence[str],
    *,
    jwt_signature: Optional[str] = None,
    legacy_hex: Optional[str] = None,
) -> None:
    """Verify against each configured key in turn; raises ``SignatureError`` when none match."""
    keys = [key for key in signing_keys if key]
    if not keys:
        raise SignatureError("no_signing_key")
    if not jwt_signature and not legacy_hex:
        raise SignatureError("missing_signature")

    failures = []
    for key in keys:
        if jwt_signature:
            try:
                _verify_jwt(jwt_signature, body, key)
                return
            except SignatureError as exc:
                failures.append(str(exc))
        if legacy_hex:
            expected = legacy_signature(body, key)
            if hmac.compare_digest(expected, legacy_hex.strip().lower()):
                return
            failures.append("legacy_mismatch")
    raise SignatureError(failures[-1] if failures else "invalid_signature")


def configured_keys(*keys: Optional[str]) -> Iterable[str]:
    return tuple(key.strip() for key in keys if key and key.strip())
