"""Authentication dependencies for API user scoping."""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    is_worker: bool = False


def ensure_owner(auth: AuthContext, owner_id: Optional[str]) -> None:
    """Reject access to a record owned by someone else."""
    if auth.is_worker:
        return
    if owner_id != auth.user_id:
        raise HTTPException(
            status_code=403,
            detail={"error": "forbidden", "message": "Video belongs to another user."},
        )


def is_worker_secret(token: Optional[str]) -> bool:
    secret = (settings.VIDEO_WORKER_SECRET or "").strip()
    return bool(secret and token and hmac.compare_digest(token, secret))


def _decode(credentials: Optional[HTTPAuthorizationCredentials]) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    return _decode(credentials)


async def get_owner_or_worker_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Accept either a user session or the shared worker secret."""
    if credentials and credentials.scheme.lower() == "bearer" and is_worker_secret(credentials.credentials):
        return AuthContext(user_id="worker", is_worker=True)
    return _decode(credentials)


async def require_worker_secret(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Guard worker endpoints when VIDEO_WORKER_SECRET is configured."""
    if not (settings.VIDEO_WORKER_SECRET or "").strip():
        return
    token = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else None
    if not is_worker_secret(token):
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Invalid worker secret."})
