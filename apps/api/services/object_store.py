"""Blob object store abstraction (local filesystem or S3)."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

Payload = Union[bytes, Path]


class ObjectStoreError(RuntimeError):
    """Raised when an object store operation fails."""


@dataclass
class StoredObject:
    key: str
    url: str
    size_bytes: Optional[int] = None


class ObjectStore(Protocol):
    async def put(self, key: str, data: Payload, *, content_type: str, public: bool = True) -> StoredObject: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str) -> List[StoredObject]: ...

    def public_url(self, key: str) -> str: ...

    def upload_url(self, key: str, content_type: str) -> str: ...


def _clean_key(key: str) -> str:
    cleaned = (key or "").strip().lstrip("/")
    parts = cleaned.split("/")
    if not cleaned or any(part in {"", ".", ".."} for part in parts):
        raise ObjectStoreError(f"Invalid object key: {key!r}")
    return cleaned


class LocalObjectStore:
    """Filesystem-backed store served under ``{base_url}/blobs``."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        return self.root / _clean_key(key)

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/blobs/{_clean_key(key)}"

    def upload_url(self, key: str, content_type: str) -> str:
        return f"{self.base_url}/blob/upload/{_clean_key(key)}"

    def _write(self, path: Path, data: Payload) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, Path):
            shutil.copyfile(data, path)
        else:
            path.write_bytes(data)
        return path.stat().st_size

    async def put(self, key: str, data: Payload, *, content_type: str, public: bool = True) -> StoredObject:
        path = self._path(key)
        try:
            size = await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise ObjectStoreError(f"put failed for {key}: {exc}") from exc
        return StoredObject(key=_clean_key(key), url=self.public_url(key), size_bytes=size)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise ObjectStoreError(f"delete failed for {key}: {exc}") from exc

    async def list(self, prefix: str) -> List[StoredObject]:
        base = self.root / (prefix or "").lstrip("/")
        search_root = base if base.is_dir() else base.parent
        if not search_root.exists():
            return []
        found: List[StoredObject] = []
        for path in sorted(search_root.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith((prefix or "").lstrip("/")):
                found.append(StoredObject(key=key, url=self.public_url(key), size_bytes=path.stat().st_size))
        return found


class S3ObjectStore:
    """S3 bucket store; originals arrive through presigned PUT URLs."""

    def __init__(self, bucket: str, region: str = "", public_base_url: str = "", presign_ttl: int = 3600, client=None):
        if not bucket:
            raise ValueError("S3_BUCKET is not configured")
        self.bucket = bucket
        self.region = region
        self.presign_ttl = presign_ttl
        self.public_base_url = (public_base_url or "").rstrip("/") or self._default_base_url()
        self.client = client or boto3.client("s3", region_name=region or None)

    def _default_base_url(self) -> str:
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"
        return f"https://{self.bucket}.s3.amazonaws.com"

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{_clean_key(key)}"

    def upload_url(self, key: str, content_type: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": _clean_key(key), "ContentType": content_type},
                ExpiresIn=self.presign_ttl,
            )
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"presign failed for {key}: {exc}") from exc

    def _put(self, key: str, data: Payload, content_type: str) -> int:
        if isinstance(data, Path):
            self.client.upload_file(str(data), self.bucket, key, ExtraArgs={"ContentType": content_type})
            return data.stat().st_size
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return len(data)

    async def put(self, key: str, data: Payload, *, content_type: str, public: bool = True) -> StoredObject:
        cleaned = _clean_key(key)
        try:
            size = await asyncio.to_thread(self._put, cleaned, data, content_type)
        except (BotoCoreError, ClientError, OSError) as exc:
            raise ObjectStoreError(f"put failed for {key}: {exc}") from exc
        return StoredObject(key=cleaned, url=self.public_url(cleaned), size_bytes=size)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=_clean_key(key))
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"delete failed for {key}: {exc}") from exc

    def _list(self, prefix: str) -> List[StoredObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        found: List[StoredObject] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for entry in page.get("Contents", []):
                found.append(StoredObject(key=entry["Key"], url=self.public_url(entry["Key"]), size_bytes=entry.get("Size")))
        return found

    async def list(self, prefix: str) -> List[StoredObject]:
        try:
            return await asyncio.to_thread(self._list, (prefix or "").lstrip("/"))
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"list failed for {prefix}: {exc}") from exc


def build_object_store(config: Settings = default_settings) -> ObjectStore:
    """Select the object store backend once at startup."""
    if config.OBJECT_STORE_BACKEND == "s3":
        return S3ObjectStore(
            bucket=config.S3_BUCKET,
            region=config.S3_REGION,
            public_base_url=config.S3_PUBLIC_BASE_URL,
            presign_ttl=config.S3_PRESIGN_TTL_SECONDS,
        )
    return LocalObjectStore(root=config.BLOB_ROOT, base_url=config.PUBLIC_BASE_URL)


async def delete_quietly(store: ObjectStore, *keys: Optional[str]) -> None:
    """Best-effort delete of several keys; failures are logged only."""
    seen = set()
    for key in keys:
        if not key or key in seen:
            continue
        seen.add(key)
        try:
            await store.delete(key)
        except Exception as exc:
            logger.warning("Could not delete object %s: %s", key, exc)
