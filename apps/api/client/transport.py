"""HTTP transport for the upload queue: create, transfer, finish."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

import httpx

from client.types import TrimMetadata, UploadErrorDetails, UploadSource

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
VALIDATION_STATUS_CODES = {413, 415}

ProgressCallback = Callable[[int, int], None]


class UploadTransportError(RuntimeError):
    """A failed request; ``status_code`` is None when the server was never reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after_sec: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_sec = retry_after_sec


@dataclass(frozen=True)
class CreatedUpload:
    blob_key: str
    upload_url: str
    public_url: str
    content_type: str
    method: str = "PUT"


class UploadTransport(Protocol):
    async def create_upload(self, source: UploadSource) -> CreatedUpload: ...

    async def send_bytes(self, created: CreatedUpload, source: UploadSource, on_progress: ProgressCallback) -> str: ...

    async def finish_upload(
        self,
        created: CreatedUpload,
        video_url: str,
        trim: Optional[TrimMetadata],
        thumbnail: Optional[bytes] = None,
    ) -> Dict[str, Any]: ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def _error_message(response: httpx.Response, step: str) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if isinstance(detail, dict):
        detail = detail.get("message") or detail.get("error")
    suffix = f": {detail}" if detail else ""
    return f"{step} failed with status {response.status_code}{suffix}"


def _raise_for_status(response: httpx.Response, step: str) -> None:
    if response.status_code < 300:
        return
    raise UploadTransportError(
        _error_message(response, step),
        status_code=response.status_code,
        retry_after_sec=_retry_after(response),
    )


class HttpUploadTransport:
    """Talks to ``/blob/create``, the returned upload URL, and ``/blob/finish``."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        charter_id: Optional[str] = None,
        timeout: float = 120.0,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.charter_id = charter_id
        self.chunk_size = chunk_size
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, url: str, step: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise UploadTransportError(f"Network error during {step}: {exc}") from exc
        _raise_for_status(response, step)
        return response

    async def create_upload(self, source: UploadSource) -> CreatedUpload:
        response = await self._request(
            "POST",
            f"{self.base_url}/blob/create",
            "create",
            json={"file_name": source.name, "content_type": source.content_type, "size_bytes": source.size_bytes},
            headers=self._auth_headers(),
        )
        payload = response.json()
        return CreatedUpload(
            blob_key=payload["blob_key"],
            upload_url=payload["upload_url"],
            public_url=payload["public_url"],
            content_type=payload.get("content_type") or source.content_type,
            method=payload.get("method") or "PUT",
        )

    async def _chunks(self, source: UploadSource, on_progress: ProgressCallback) -> AsyncIterator[bytes]:
        sent = 0
        handle = await asyncio.to_thread(open, source.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, self.chunk_size)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
                on_progress(sent, source.size_bytes)
        finally:
            handle.close()

    async def send_bytes(self, created: CreatedUpload, source: UploadSource, on_progress: ProgressCallback) -> str:
        headers = {"Content-Type": created.content_type, "Content-Length": str(source.size_bytes)}
        # Presigned storage URLs carry their own credentials.
        if created.upload_url.startswith(self.base_url):
            headers.update(self._auth_headers())
        await self._request(
            created.method,
            created.upload_url,
            "upload",
            content=self._chunks(source, on_progress),
            headers=headers,
        )
        return created.public_url

    async def finish_upload(
        self,
        created: CreatedUpload,
        video_url: str,
        trim: Optional[TrimMetadata],
        thumbnail: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        data = {"video_url": video_url, "blob_key": created.blob_key}
        data.update((trim or TrimMetadata()).form_fields())
        if self.charter_id:
            data["charter_id"] = self.charter_id
        files = {"thumbnail": ("thumb.jpg", thumbnail, "image/jpeg")} if thumbnail else None
        response = await self._request(
            "POST",
            f"{self.base_url}/blob/finish",
            "finish",
            data=data,
            files=files,
            headers=self._auth_headers(),
        )
        return response.json()


def categorize_error(exc: BaseException) -> UploadErrorDetails:
    """Map a failed upload step to a category and whether retrying can help."""
    message = str(exc) or exc.__class__.__name__
    status_code = getattr(exc, "status_code", None)
    retry_after = getattr(exc, "retry_after_sec", None)

    if isinstance(exc, httpx.TransportError) or (isinstance(exc, UploadTransportError) and status_code is None):
        return UploadErrorDetails(
            code="NETWORK_ERROR",
            category="network",
            message=f"Network connection failed: {message}",
            recoverable=True,
            retry_after_sec=5.0,
        )
    if status_code in RETRYABLE_STATUS_CODES:
        return UploadErrorDetails(
            code="SERVER_ERROR",
            category="server",
            message=message,
            recoverable=True,
            status_code=status_code,
            retry_after_sec=retry_after or 10.0,
        )
    if status_code in VALIDATION_STATUS_CODES:
        return UploadErrorDetails(
            code="VALIDATION_ERROR",
            category="validation",
            message=message,
            recoverable=False,
            status_code=status_code,
        )
    if status_code is not None and 400 <= status_code < 500:
        return UploadErrorDetails(
            code="CLIENT_ERROR",
            category="client",
            message=message,
            recoverable=False,
            status_code=status_code,
        )
    lowered = message.lower()
    if "size" in lowered or "format" in lowered:
        return UploadErrorDetails(code="VALIDATION_ERROR", category="validation", message=message, recoverable=False)
    return UploadErrorDetails(
        code="UNKNOWN_ERROR",
        category="unknown",
        message=message,
        recoverable=True,
        status_code=status_code,
        retry_after_sec=5.0,
    )
