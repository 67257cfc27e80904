"""
Service configuration.

Settings come from an optional YAML file (``--config`` or ``PPTBIND_CONFIG``)
and are then overridden by ``PPTBIND_*`` environment variables. A Supabase
deployment can also be configured with just ``SUPABASE_URL`` and
``SUPABASE_ANON_KEY``.

Example ``pptbind.yaml``::

    auth:
      mode: static
      tokens: {dev-token: user-1}
    catalog:
      backend: file
      path: templates.yaml
    storage:
      backend: local
      root: generated_files
      public_base_url: http://localhost:8000/files
    render:
      static_fields: {company_name: ACME Vision}
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from pptbind.core.errors import ConfigValidationError
from pptbind.core.extract.field_registry import FieldRegistry
from pptbind.core.extract.template_parser import PartLimits
from pptbind.core.render.template_renderer import RenderOptions

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUE = ("true", "1", "yes", "on")


@dataclass
class AuthConfig:
    """``static``: tokens map bearer token -> user id. ``remote``: ask ``url`` + /auth/v1/user."""

    mode: str = "static"
    tokens: dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    api_key: Optional[str] = None


@dataclass
class CatalogConfig:
    backend: str = "file"
    path: Optional[str] = None
    url: Optional[str] = None
    api_key: Optional[str] = None
    table: str = "ppt_templates"


@dataclass
class StorageConfig:
    backend: str = "local"
    root: str = "generated_files"
    public_base_url: Optional[str] = None
    url: Optional[str] = None
    api_key: Optional[str] = None
    bucket: str = "ppt-templates"
    prefix: str = "generated"


@dataclass
class RenderConfig:
    date_format: str = "{year}/{month}/{day}"
    time_format: str = "%H:%M:%S"
    static_fields: dict[str, Any] = field(default_factory=dict)
    strict: bool = False
    compresslevel: Optional[int] = None
    default_output_name: str = "generated.pptx"

    def options(self) -> RenderOptions:
        return RenderOptions(
            date_format=self.date_format,
            time_format=self.time_format,
            static_fields=dict(self.static_fields),
            compresslevel=self.compresslevel,
        )


@dataclass
class ParseConfig:
    max_masters: int = 10
    max_layouts: int = 20
    max_slides: int = 100
    field_catalogs: list[str] = field(default_factory=list)

    def limits(self) -> PartLimits:
        return PartLimits(max_masters=self.max_masters, max_layouts=self.max_layouts, max_slides=self.max_slides)

    def registry(self) -> FieldRegistry:
        return FieldRegistry.from_files(self.field_catalogs)


@dataclass
class HttpConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    timeout: float = 30.0
    cors_origin: str = "*"
    max_template_bytes: int = 100 * 1024 * 1024
    # local directory clients may name in templateUrl; unset means http(s) only
    template_root: Optional[str] = None


@dataclass
class Settings:
    auth: AuthConfig = field(default_factory=AuthConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    parse: ParseConfig = field(default_factory=ParseConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    log_level: str = "INFO"
    source: Optional[str] = None


def configure_logging(level: str | int = "INFO") -> None:
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def _section(cls: type, data: Any, name: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigValidationError([f"config section '{name}' must be a mapping"])
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigValidationError([f"config section '{name}' has unknown keys: {', '.join(unknown)}"])
    return cls(**dict(data))


def _parse_settings(data: Mapping[str, Any]) -> Settings:
    return Settings(
        auth=_section(AuthConfig, data.get("auth"), "auth"),
        catalog=_section(CatalogConfig, data.get("catalog"), "catalog"),
        storage=_section(StorageConfig, data.get("storage"), "storage"),
        render=_section(RenderConfig, data.get("render"), "render"),
        parse=_section(ParseConfig, data.get("parse"), "parse"),
        http=_section(HttpConfig, data.get("http"), "http"),
        log_level=str(data.get("log_level") or "INFO"),
    )


def _apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    """Apply environment variable overrides to settings."""

    supabase_url = env.get("SUPABASE_URL")
    supabase_key = env.get("SUPABASE_ANON_KEY")
    if supabase_url:
        settings.auth.mode = "remote"
        settings.auth.url = supabase_url
        settings.catalog.backend = "rest"
        settings.catalog.url = supabase_url
        settings.storage.backend = "http"
        settings.storage.url = supabase_url
    if supabase_key:
        settings.auth.api_key = settings.auth.api_key or supabase_key
        settings.catalog.api_key = settings.catalog.api_key or supabase_key
        settings.storage.api_key = settings.storage.api_key or supabase_key

    if env.get("PPTBIND_LOG_LEVEL"):
        settings.log_level = env["PPTBIND_LOG_LEVEL"]

    if env.get("PPTBIND_AUTH_MODE"):
        settings.auth.mode = env["PPTBIND_AUTH_MODE"]
    if env.get("PPTBIND_AUTH_URL"):
        settings.auth.url = env["PPTBIND_AUTH_URL"]
    if env.get("PPTBIND_AUTH_TOKEN"):
        # "token" or "token:user-id"
        token, _, user = env["PPTBIND_AUTH_TOKEN"].partition(":")
        settings.auth.tokens[token] = user or "local"

    if env.get("PPTBIND_CATALOG_PATH"):
        settings.catalog.backend = "file"
        settings.catalog.path = env["PPTBIND_CATALOG_PATH"]
    if env.get("PPTBIND_CATALOG_URL"):
        settings.catalog.backend = "rest"
        settings.catalog.url = env["PPTBIND_CATALOG_URL"]

    if env.get("PPTBIND_STORAGE_BACKEND"):
        settings.storage.backend = env["PPTBIND_STORAGE_BACKEND"]
    if env.get("PPTBIND_STORAGE_ROOT"):
        settings.storage.root = env["PPTBIND_STORAGE_ROOT"]
    if env.get("PPTBIND_STORAGE_URL"):
        settings.storage.url = env["PPTBIND_STORAGE_URL"]
    if env.get("PPTBIND_STORAGE_BUCKET"):
        settings.storage.bucket = env["PPTBIND_STORAGE_BUCKET"]
    if env.get("PPTBIND_PUBLIC_BASE_URL"):
        settings.storage.public_base_url = env["PPTBIND_PUBLIC_BASE_URL"]

    if env.get("PPTBIND_STRICT"):
        settings.render.strict = env["PPTBIND_STRICT"].lower() in _TRUE

    if env.get("PPTBIND_HOST"):
        settings.http.host = env["PPTBIND_HOST"]
    if env.get("PPTBIND_PORT"):
        settings.http.port = int(env["PPTBIND_PORT"])
    if env.get("PPTBIND_HTTP_TIMEOUT"):
        settings.http.timeout = float(env["PPTBIND_HTTP_TIMEOUT"])
    if env.get("PPTBIND_TEMPLATE_ROOT"):
        settings.http.template_root = env["PPTBIND_TEMPLATE_ROOT"]

    return settings


def _validate_settings(settings: Settings) -> None:
    issues: list[str] = []
    if settings.auth.mode not in ("static", "remote"):
        issues.append(f"auth.mode must be 'static' or 'remote', got {settings.auth.mode!r}")
    if settings.auth.mode == "remote" and not settings.auth.url:
        issues.append("auth.url is required when auth.mode is 'remote'")
    if settings.catalog.backend not in ("file", "rest"):
        issues.append(f"catalog.backend must be 'file' or 'rest', got {settings.catalog.backend!r}")
    if settings.catalog.backend == "rest" and not settings.catalog.url:
        issues.append("catalog.url is required when catalog.backend is 'rest'")
    if settings.storage.backend not in ("local", "http"):
        issues.append(f"storage.backend must be 'local' or 'http', got {settings.storage.backend!r}")
    if settings.storage.backend == "http" and not settings.storage.url:
        issues.append("storage.url is required when storage.backend is 'http'")
    for name in ("max_masters", "max_layouts", "max_slides"):
        if getattr(settings.parse, name) < 1:
            issues.append(f"parse.{name} must be at least 1")
    if issues:
        raise ConfigValidationError(issues)


def load_settings(config_path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from YAML with environment variable overrides.

    Raises ``ConfigValidationError`` when the resulting settings are inconsistent.
    """
    env = os.environ if env is None else env
    path = config_path or (Path(env["PPTBIND_CONFIG"]) if env.get("PPTBIND_CONFIG") else None)

    data: Any = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ConfigValidationError([f"config file {path} must contain a mapping"])
        logger.info("Loaded configuration from %s", path)

    settings = _apply_env_overrides(_parse_settings(data), env)
    settings.source = str(path) if path is not None else None
    _validate_settings(settings)
    return settings
