"""Resolve a template id or URL to template bytes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import unquote, urlparse

import requests
import yaml

from pptbind.core.errors import MissingTemplate, PayloadValidationError, TemplateDownloadError
from pptbind.core.utils.config import CatalogConfig

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10
DOWNLOAD_CHUNK_BYTES = 64 * 1024
REMOTE_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class TemplateRecord:
    id: str
    file_url: str
    name: str = ""


class TemplateCatalog(Protocol):
    def get(self, template_id: str, *, token: Optional[str] = None) -> TemplateRecord: ...


def _record(template_id: str, obj: Any) -> Optional[TemplateRecord]:
    if isinstance(obj, str):
        return TemplateRecord(id=template_id, file_url=obj)
    if isinstance(obj, Mapping) and obj.get("file_url"):
        return TemplateRecord(id=template_id, file_url=str(obj["file_url"]), name=str(obj.get("name") or ""))
    return None


class FileTemplateCatalog:
    """Templates listed in a YAML/JSON file.

    Either a mapping ``{id: {file_url, name}}`` or ``{templates: [{id, file_url, name}]}``.
    Relative local paths resolve against the catalog file's directory.
    """

    def __init__(self, path: Optional[str | Path]) -> None:
        self.path = Path(path) if path else None
        self._records: dict[str, TemplateRecord] = {}
        if self.path is not None:
            self._load(self.path)

    def _load(self, path: Path) -> None:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(data, Mapping) and isinstance(data.get("templates"), list):
            items = {str(t.get("id")): t for t in data["templates"] if isinstance(t, Mapping)}
        elif isinstance(data, Mapping):
            items = {str(k): v for k, v in data.items()}
        else:
            raise ValueError(f"template catalog {path} must be a mapping")
        for template_id, obj in items.items():
            rec = _record(template_id, obj)
            if rec is None:
                logger.warning("Skipping catalog entry %s without file_url", template_id)
                continue
            if "://" not in rec.file_url and not Path(rec.file_url).is_absolute():
                rec = TemplateRecord(rec.id, str(path.parent / rec.file_url), rec.name)
            self._records[template_id] = rec
        logger.info("Loaded %d templates from %s", len(self._records), path)

    def get(self, template_id: str, *, token: Optional[str] = None) -> TemplateRecord:
        rec = self._records.get(template_id)
        if rec is None:
            raise MissingTemplate(f"Template not found: {template_id}")
        return rec


class RestTemplateCatalog:
    """PostgREST table lookup: ``GET {url}/rest/v1/{table}?id=eq.<id>``."""

    def __init__(
        self,
        url: str,
        *,
        table: str = "ppt_templates",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = f"{url.rstrip('/')}/rest/v1/{table}"
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def get(self, template_id: str, *, token: Optional[str] = None) -> TemplateRecord:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if token or self.api_key:
            headers["Authorization"] = f"Bearer {token or self.api_key}"
        params = {"select": "id,name,file_url", "id": f"eq.{template_id}"}
        try:
            r = self.session.get(self.url, headers=headers, params=params, timeout=(CONNECT_TIMEOUT_S, self.timeout))
        except requests.RequestException as e:
            raise TemplateDownloadError(f"Template catalog unreachable: {e}") from e
        if not r.ok:
            logger.warning("Template lookup for %s failed with HTTP %d", template_id, r.status_code)
            raise MissingTemplate(f"Template not found: {template_id}")
        try:
            rows = r.json()
        except ValueError as e:
            raise TemplateDownloadError("Template catalog returned invalid JSON") from e
        rec = _record(template_id, rows[0]) if isinstance(rows, list) and rows else None
        if rec is None:
            raise MissingTemplate(f"Template not found: {template_id}")
        return rec


def build_catalog(
    cfg: CatalogConfig, *, timeout: float = 30.0, session: Optional[requests.Session] = None
) -> TemplateCatalog:
    if cfg.backend == "rest":
        return RestTemplateCatalog(cfg.url or "", table=cfg.table, api_key=cfg.api_key, timeout=timeout, session=session)
    return FileTemplateCatalog(cfg.path)


def _local_path(url: str) -> Path:
    parsed = urlparse(url)
    return Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url)


def _too_large(max_bytes: int) -> TemplateDownloadError:
    return TemplateDownloadError(f"Template is larger than {max_bytes} bytes")


def _read_response(r: requests.Response, max_bytes: Optional[int]) -> bytes:
    declared = r.headers.get("Content-Length", "")
    if max_bytes is not None and declared.isdigit() and int(declared) > max_bytes:
        raise _too_large(max_bytes)
    buf = bytearray()
    for chunk in r.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
        buf += chunk
        if max_bytes is not None and len(buf) > max_bytes:
            raise _too_large(max_bytes)
    return bytes(buf)


def fetch_template_bytes(
    url: str,
    *,
    timeout: float = 30.0,
    session: Optional[requests.Session] = None,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Download ``url`` (http/https) or read it from disk (plain path or ``file://``).

    Downloads are streamed and abandoned as soon as they pass ``max_bytes``.
    """
    if urlparse(url).scheme in REMOTE_SCHEMES:
        session = session or requests.Session()
        try:
            with session.get(url, timeout=(CONNECT_TIMEOUT_S, timeout), stream=True) as r:
                if not r.ok:
                    raise TemplateDownloadError(f"Failed to download template: {r.status_code} {r.reason}")
                data = _read_response(r, max_bytes)
        except requests.RequestException as e:
            raise TemplateDownloadError(f"Failed to download template: {e}") from e
    else:
        path = _local_path(url)
        try:
            if max_bytes is not None and path.stat().st_size > max_bytes:
                raise _too_large(max_bytes)
            data = path.read_bytes()
        except OSError as e:
            raise TemplateDownloadError(f"Failed to read template {path}: {e}") from e

    logger.info("Template loaded, size: %d bytes", len(data))
    return data


class TemplateSource:
    """Catalog lookup plus download, as used by both endpoints.

    Catalog records may point anywhere, local paths included. A ``templateUrl``
    sent by a client must be http(s), or a path under ``local_root`` when one
    is configured.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        max_bytes: Optional[int] = None,
        local_root: Optional[str | Path] = None,
    ) -> None:
        self.catalog = catalog
        self.timeout = timeout
        self.session = session
        self.max_bytes = max_bytes
        self.local_root = Path(local_root).resolve() if local_root else None

    def check_request_url(self, url: str) -> None:
        if urlparse(url).scheme in REMOTE_SCHEMES:
            return
        if self.local_root is None:
            raise PayloadValidationError(["templateUrl must be an http or https URL"])
        target = _local_path(url).resolve()
        if self.local_root not in target.parents:
            raise PayloadValidationError(["templateUrl is outside the template directory"])

    def load(
        self,
        *,
        template_id: Optional[str] = None,
        template_url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> tuple[bytes, Optional[TemplateRecord]]:
        record = None
        if template_id:
            record = self.catalog.get(template_id, token=token)
            url = record.file_url
        elif template_url:
            self.check_request_url(template_url)
            url = template_url
        else:
            raise MissingTemplate("Either templateId or templateUrl is required")
        data = fetch_template_bytes(url, timeout=self.timeout, session=self.session, max_bytes=self.max_bytes)
        return data, record
