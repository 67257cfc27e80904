"""Persist rendered documents and hand back a public URL."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import requests

from pptbind.core.container.package import PPTX_MIME_TYPE
from pptbind.core.errors import StorageUploadError
from pptbind.core.utils.config import StorageConfig

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10
FALLBACK_FILE_NAME = "output.pptx"


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    size: int


class Storage(Protocol):
    def upload(self, key: str, data: bytes, *, content_type: str = PPTX_MIME_TYPE, token: Optional[str] = None) -> StoredObject: ...


def safe_file_name(name: str) -> str:
    """ASCII-safe storage name: non-word characters and whitespace become ``_``."""
    s = re.sub(r"[^\w\s.-]", "_", name, flags=re.ASCII)
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"_+", "_", s)
    s = s.strip("_")
    return s or FALLBACK_FILE_NAME


def storage_key(user_id: str, file_name: str, *, prefix: str = "generated", now_ms: Optional[int] = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    user = re.sub(r"[^\w.-]", "_", user_id, flags=re.ASCII).strip(".") or "anonymous"
    return f"{prefix}/{user}/{stamp}_{safe_file_name(file_name)}"


class LocalStorage:
    def __init__(self, root: str | Path, *, public_base_url: Optional[str] = None) -> None:
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def upload(self, key: str, data: bytes, *, content_type: str = PPTX_MIME_TYPE, token: Optional[str] = None) -> StoredObject:
        target = (self.root / key).resolve()
        if self.root not in target.parents:
            raise StorageUploadError(f"Refusing to write outside storage root: {key}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageUploadError(f"Failed to upload generated file: {e}") from e
        url = f"{self.public_base_url}/{quote(key)}" if self.public_base_url else target.as_uri()
        logger.info("File stored at %s", target)
        return StoredObject(key=key, url=url, size=len(data))


class HttpObjectStorage:
    """Supabase storage API: ``POST {url}/storage/v1/object/{bucket}/{key}``."""

    def __init__(
        self,
        url: str,
        *,
        bucket: str = "ppt-templates",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base = url.rstrip("/") + "/storage/v1/object"
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def public_url(self, key: str) -> str:
        return f"{self.base}/public/{self.bucket}/{quote(key)}"

    def upload(self, key: str, data: bytes, *, content_type: str = PPTX_MIME_TYPE, token: Optional[str] = None) -> StoredObject:
        headers = {"Content-Type": content_type, "x-upsert": "true"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if token or self.api_key:
            headers["Authorization"] = f"Bearer {token or self.api_key}"
        url = f"{self.base}/{self.bucket}/{quote(key)}"
        try:
            r = self.session.post(url, data=data, headers=headers, timeout=(CONNECT_TIMEOUT_S, self.timeout))
        except requests.RequestException as e:
            raise StorageUploadError(f"Failed to upload generated file: {e}") from e
        if not r.ok:
            raise StorageUploadError(f"Failed to upload generated file: {r.status_code} {r.text[:200]}")
        public = self.public_url(key)
        logger.info("File uploaded successfully: %s", public)
        return StoredObject(key=key, url=public, size=len(data))


def build_storage(cfg: StorageConfig, *, timeout: float = 30.0, session: Optional[requests.Session] = None) -> Storage:
    if cfg.backend == "http":
        return HttpObjectStorage(cfg.url or "", bucket=cfg.bucket, api_key=cfg.api_key, timeout=timeout, session=session)
    return LocalStorage(cfg.root, public_base_url=cfg.public_base_url)
