"""HTTP endpoints for template parsing and document generation.

    uvicorn --factory pptbind.apps.http.server:create_app

Both POST endpoints require ``Authorization: Bearer <token>`` and answer
with JSON; every response carries permissive CORS headers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Callable, Optional
from urllib.parse import unquote, urlparse

import orjson
from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from pptbind.apps.http.auth import TokenVerifier, User, authenticate, build_verifier
from pptbind.apps.http.storage import Storage, build_storage, storage_key
from pptbind.apps.http.template_source import TemplateSource, build_catalog
from pptbind.core.container.package import PPTX_MIME_TYPE
from pptbind.core.container.packager import verify_package
from pptbind.core.errors import (
    AuthenticationError,
    CorruptArchive,
    MissingTemplate,
    PayloadValidationError,
    PptbindError,
    TemplateSyntaxError,
)
from pptbind.core.extract.template_parser import parse_template
from pptbind.core.render.template_renderer import render_template
from pptbind.core.utils.config import Settings, load_settings
from pptbind.core.validate.schema_validate import validate_payload

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

PARSE_PATH = "/parse-ppt-template"
RENDER_PATH = "/generate-ppt-from-template"


class JsonResponse(Response):
    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content)


class GeneratedDocumentError(PptbindError):
    """Raised when the packed output does not reopen as an archive."""


def _error(status: int, message: str, details: Optional[list[Any]] = None) -> JsonResponse:
    body: dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return JsonResponse(body, status_code=status)


def error_response(e: Exception) -> JsonResponse:
    """Map an exception raised while serving a request to its JSON error response."""
    if isinstance(e, AuthenticationError):
        return _error(401, "Unauthorized")
    if isinstance(e, PayloadValidationError):
        message = e.issues[0] if len(e.issues) == 1 else e.header.rstrip(":")
        return _error(400, message, list(e.issues))
    if isinstance(e, TemplateSyntaxError):
        return _error(400, e.summary, e.details())
    if isinstance(e, MissingTemplate):
        return _error(404, "Template not found")
    if isinstance(e, CorruptArchive):
        return _error(400, str(e))
    if isinstance(e, PptbindError):
        return _error(500, str(e))
    logger.exception("Unhandled error while serving request")
    return _error(500, str(e) or "Internal server error")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _file_name_from_url(url: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or "template.pptx"


class TemplateService:
    """Request handlers, independent of the web framework."""

    def __init__(
        self,
        settings: Settings,
        *,
        source: TemplateSource,
        storage: Storage,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.source = source
        self.storage = storage
        self.clock = clock
        self.registry = settings.parse.registry()

    def _load(self, payload: dict[str, Any], token: str):
        template_id = payload.get("templateId")
        template_url = payload.get("templateUrl")
        if not template_id and not template_url:
            raise PayloadValidationError(["Either templateId or templateUrl is required"])
        return self.source.load(template_id=template_id, template_url=template_url, token=token)

    def parse(self, payload: dict[str, Any], user: User, token: str) -> dict[str, Any]:
        validate_payload(payload, "parse_request")
        data, record = self._load(payload, token)
        # for catalog templates the record name and downloaded size win
        if record is not None:
            file_name = record.name or payload.get("fileName") or _file_name_from_url(record.file_url)
            file_size = len(data)
        else:
            file_name = payload.get("fileName") or _file_name_from_url(payload.get("templateUrl", ""))
            file_size = payload.get("fileSize") or len(data)
        logger.info("Parsing template %s for user %s", file_name, user.id)
        parsed = parse_template(
            data,
            file_name=file_name,
            file_size=file_size,
            registry=self.registry,
            limits=self.settings.parse.limits(),
            now=self.clock(),
        )
        return {"success": True, "template": parsed.to_dict()}

    def render(self, payload: dict[str, Any], user: User, token: str) -> dict[str, Any]:
        validate_payload(payload, "render_request")
        data, record = self._load(payload, token)
        logger.info("Processing template request for user: %s", user.id)

        strict = bool(payload.get("strict", self.settings.render.strict))
        result = render_template(
            data,
            payload["data"],
            strict=strict,
            now=self.clock(),
            options=self.settings.render.options(),
        )
        try:
            verify_package(result.content)
        except CorruptArchive as e:
            raise GeneratedDocumentError(f"Generated document is not a valid archive: {e}") from e

        output_name = payload.get("outputFileName") or self.settings.render.default_output_name
        key = storage_key(user.id, output_name, prefix=self.settings.storage.prefix)
        stored = self.storage.upload(key, result.content, content_type=PPTX_MIME_TYPE, token=token)

        body: dict[str, Any] = {
            "success": True,
            "fileUrl": stored.url,
            "fileName": output_name,
            "fileSize": len(result.content),
            "slideCount": result.slide_count,
            "renderedParts": list(result.mutated_parts),
        }
        if record is not None and record.name:
            body["templateName"] = record.name
        return body


def create_app(
    settings: Optional[Settings] = None,
    *,
    verifier: Optional[TokenVerifier] = None,
    source: Optional[TemplateSource] = None,
    storage: Optional[Storage] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or load_settings()
    timeout = settings.http.timeout
    verifier = verifier or build_verifier(settings.auth, timeout=timeout)
    source = source or TemplateSource(
        build_catalog(settings.catalog, timeout=timeout),
        timeout=timeout,
        max_bytes=settings.http.max_template_bytes,
        local_root=settings.http.template_root,
    )
    storage = storage or build_storage(settings.storage, timeout=timeout)
    service = TemplateService(settings, source=source, storage=storage, clock=clock or _utc_now)

    cors = dict(CORS_HEADERS)
    cors["Access-Control-Allow-Origin"] = settings.http.cors_origin

    app = FastAPI(title="pptbind", description="Presentation template parsing and generation")
    app.state.service = service

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=cors)
        response = await call_next(request)
        response.headers.update(cors)
        return response

    async def handle(request: Request, handler: Callable[[dict[str, Any], User, str], dict[str, Any]]) -> Response:
        try:
            user, token = authenticate(verifier, request.headers.get("Authorization"))
            raw = await request.body()
            try:
                payload = orjson.loads(raw) if raw else {}
            except orjson.JSONDecodeError as e:
                raise PayloadValidationError([f"Request body is not valid JSON: {e}"]) from e
            if not isinstance(payload, dict):
                raise PayloadValidationError(["Request body must be a JSON object"])
            body = await run_in_threadpool(handler, payload, user, token)
        except Exception as e:
            return error_response(e)
        return JsonResponse(body)

    @app.get("/health")
    def health() -> JsonResponse:
        return JsonResponse({"status": "ok"})

    @app.post(PARSE_PATH)
    async def parse_ppt_template(request: Request) -> Response:
        return await handle(request, service.parse)

    @app.post(RENDER_PATH)
    async def generate_ppt_from_template(request: Request) -> Response:
        return await handle(request, service.render)

    return app

