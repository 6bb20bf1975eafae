"""Signed session tokens identifying the captain behind an API call."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import Settings, settings as default_settings


SESSION_TOKEN_TYPE = "cma_session"


class SessionTokenError(ValueError):
    """Raised for missing, expired, or foreign tokens."""


@dataclass
class SessionToken:
    token: str
    user_id: str
    expires_at: int


def issue_session_token(
    user_id: str,
    email: Optional[str] = None,
    ttl_hours: Optional[int] = None,
    config: Settings = default_settings,
) -> SessionToken:
    now = datetime.now(timezone.utc)
    hours = max(int(ttl_hours or config.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    token = jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return SessionToken(token=token, user_id=user_id, expires_at=expires_at)


def decode_session_token(token: str, config: Settings = default_settings) -> Dict[str, Any]:
    """Return verified claims; the subject is the captain's user id."""
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise SessionTokenError("Session token expired.") from exc
    except JWTError as exc:
        raise SessionTokenError("Invalid session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")
    if not str(claims.get("sub") or "").strip():
        raise SessionTokenError("Session token missing subject.")
    return claims
