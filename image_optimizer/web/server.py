"""FastAPI application exposing the image conversion session API."""

from __future__ import annotations

import asyncio
import contextvars
import logging
import sys
import uuid
from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel, Field
from starlette.datastructures import FormData, UploadFile
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig, get_conversion_workers, get_max_upload_bytes
from ..processing import PillowImageCodec, build_zip_archive
from ..services.conversion import (
    BatchResult,
    ConversionOrchestrator,
    ConvertedFile,
    FreshUpload,
    ImageCodec,
    ReconvertRequest,
)
from ..services.errors import ImageOptimizerError, InvalidPath
from ..services.events import emit_structured_event
from ..services.layout import AssetLayout
from ..services.naming import sanitize_session_id
from ..services.reconciliation import ResolvedAsset, SessionReconciler
from ..services.storage import SessionRepository


T = TypeVar("T")

_UPLOAD_FIELDS = ("images", "images[]")
_RECONVERT_FROM_FIELDS = ("reconvertFrom[]", "reconvertFrom")
_RECONVERT_NAME_FIELDS = ("reconvertName[]", "reconvertName")


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "image_optimizer_request_id",
    default=None,
)
_SESSION_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "image_optimizer_session",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    session_id = _SESSION_VAR.get()
    if session_id:
        context["session"] = str(session_id)
    return context


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> FormData:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        request_token = _REQUEST_ID_VAR.set(request_id)
        session_token = _SESSION_VAR.set(None)
        try:
            await self.app(scope, receive, send)
        finally:
            _SESSION_VAR.reset(session_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("image_optimizer.web.events"), {})


def _emit_request_event(message: str, *, payload: Optional[Dict[str, Any]] = None) -> None:
    correlation = _collect_correlation_context()
    session_id = correlation.pop("session", None)
    emit_structured_event(
        "REQUEST",
        message,
        session_id=session_id,
        payload={**correlation, **(payload or {})},
        level=logging.INFO,
        logger=EVENT_LOGGER,
    )


def _emit_db_event(
    action: str,
    *,
    session_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
) -> None:
    correlation = _collect_correlation_context()
    correlation.pop("session", None)
    emit_structured_event(
        "DB_QUERY",
        action,
        session_id=session_id,
        payload={**correlation, **(payload or {})},
        duration_ms=duration_ms,
        logger=EVENT_LOGGER,
    )


class FileDescriptor(BaseModel):
    displayName: str
    storageName: str
    format: str
    thumbnailName: str
    originalSize: int
    convertedSize: int
    compressionRatio: float


class ItemFailurePayload(BaseModel):
    name: str
    error: str
    message: str


class ConvertResponse(BaseModel):
    sessionId: str
    files: List[FileDescriptor] = Field(default_factory=list)
    failures: List[ItemFailurePayload] = Field(default_factory=list)


class SessionFilesResponse(BaseModel):
    sessionId: str
    files: List[FileDescriptor] = Field(default_factory=list)


class StatusResponse(BaseModel):
    status: str


def _http_error(error: ImageOptimizerError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_payload())


def _missing_parameter(name: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"error": "MissingParameter", "message": f"Query parameter '{name}' is required"},
    )


def _require_session(raw: Optional[str], *, parameter: str) -> str:
    if raw is None or not raw.strip():
        raise _missing_parameter(parameter)
    session_id = sanitize_session_id(raw)
    if session_id != raw.strip():
        raise _http_error(InvalidPath("Invalid session identifier"))
    _SESSION_VAR.set(session_id)
    return session_id


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _form_values(form: FormData, keys: tuple[str, ...]) -> List[Any]:
    values: List[Any] = []
    for key in keys:
        values.extend(form.getlist(key))
    return values


def _batch_status(result: BatchResult) -> int:
    codes = {failure.error for failure in result.failures}
    return 500 if "ProcessingFailed" in codes else 400


def create_app(
    repository: SessionRepository,
    *,
    config: AppConfig,
    root_path: str | None = None,
    codec: Optional[ImageCodec] = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="Image Optimizer",
        description="Convert images to WebP, JPEG or PNG within a session",
        root_path=_normalize_root_path(root_path),
        request_class=LargeUploadRequest,
    )
    repository.configure_event_emitter(_emit_db_event)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    layout = AssetLayout(config.sessions_root)
    orchestrator = ConversionOrchestrator(
        repository,
        layout,
        codec or PillowImageCodec(),
        max_workers=get_conversion_workers(),
    )
    reconciler = SessionReconciler(repository, layout, archiver=build_zip_archive)
    app.state.repository = repository
    app.state.layout = layout
    app.state.orchestrator = orchestrator
    app.state.reconciler = reconciler

    async def _run_blocking(operation: Callable[[], T]) -> T:
        """Run ``operation`` on the default executor keeping the request context."""

        loop = asyncio.get_running_loop()
        parent_context = contextvars.copy_context()
        return await loop.run_in_executor(None, lambda: parent_context.run(operation))

    def _shutdown() -> None:
        LOGGER.info("Shutting down conversion workers and database handle")
        orchestrator.close()
        repository.close()

    app.add_event_handler("shutdown", _shutdown)

    def _asset_response(asset: ResolvedAsset, *, disposition: str) -> FileResponse:
        return FileResponse(
            asset.path,
            media_type=asset.media_type,
            filename=asset.download_name,
            content_disposition_type=disposition,
        )

    @app.get("/api/health", response_model=StatusResponse)
    async def health() -> StatusResponse:
        return StatusResponse(status="ok")

    @app.post("/api/convert", response_model=ConvertResponse)
    async def convert(request: Request) -> ConvertResponse:
        form = await request.form()
        try:
            raw_session = form.get("sessionId")
            session_hint = raw_session if isinstance(raw_session, str) else None
            raw_format = form.get("format")
            target_format = raw_format if isinstance(raw_format, str) else None

            uploads: List[FreshUpload] = []
            for entry in _form_values(form, _UPLOAD_FIELDS):
                if not isinstance(entry, UploadFile):
                    continue
                uploads.append(
                    FreshUpload(
                        data=await entry.read(),
                        filename=entry.filename or "image",
                        content_type=entry.content_type,
                    )
                )

            sources = [str(value) for value in _form_values(form, _RECONVERT_FROM_FIELDS)]
            names = [str(value) for value in _form_values(form, _RECONVERT_NAME_FIELDS)]
        finally:
            await form.close()

        reconverts = [
            ReconvertRequest(
                source_display_name=source,
                desired_display_name=names[index] if index < len(names) else "",
            )
            for index, source in enumerate(sources)
        ]
        _emit_request_event(
            "Conversion requested",
            payload={
                "format": target_format,
                "uploads": len(uploads),
                "reconverts": len(reconverts),
            },
        )

        try:
            result = await _run_blocking(
                lambda: orchestrator.submit_batch(
                    target_format,
                    session_hint,
                    uploads=uploads,
                    reconverts=reconverts,
                )
            )
        except ImageOptimizerError as error:
            LOGGER.warning("Conversion batch rejected: %s", error.message)
            raise _http_error(error) from error

        _SESSION_VAR.set(result.session_id)
        payload = result.as_payload()
        if result.all_failed:
            first = result.failures[0]
            LOGGER.warning("Every item of the batch failed (%d item(s))", len(result.failures))
            raise HTTPException(
                status_code=_batch_status(result),
                detail={
                    "error": first.error,
                    "message": "None of the submitted images could be converted",
                    "sessionId": result.session_id,
                    "failures": payload["failures"],
                },
            )
        LOGGER.info(
            "Converted %d file(s) with %d failure(s)",
            len(result.converted),
            len(result.failures),
        )
        return ConvertResponse(**payload)

    @app.get("/api/convert", response_model=SessionFilesResponse)
    async def list_session_files(
        session_id: Optional[str] = Query(None, alias="sessionId"),
    ) -> SessionFilesResponse:
        resolved = _require_session(session_id, parameter="sessionId")
        records = await _run_blocking(lambda: reconciler.list_files(resolved))
        files = [ConvertedFile.from_record(record).as_payload() for record in records]
        return SessionFilesResponse(sessionId=resolved, files=files)

    @app.delete("/api/convert", response_model=StatusResponse)
    async def delete_session_files(
        session_id: Optional[str] = Query(None, alias="sessionId"),
        file: Optional[str] = Query(None),
    ) -> StatusResponse:
        resolved = _require_session(session_id, parameter="sessionId")
        try:
            if file:
                removed = await _run_blocking(lambda: reconciler.delete_one(resolved, file))
                _emit_request_event("File deleted", payload={"file": file, "removed": removed})
            else:
                count = await _run_blocking(lambda: reconciler.delete_all(resolved))
                _emit_request_event("Session cleared", payload={"removed": count})
        except ImageOptimizerError as error:
            raise _http_error(error) from error
        return StatusResponse(status="deleted")

    @app.get("/api/download")
    async def download_file(
        session: Optional[str] = Query(None),
        file: Optional[str] = Query(None),
    ) -> FileResponse:
        resolved = _require_session(session, parameter="session")
        if not file:
            raise _missing_parameter("file")
        try:
            asset = await _run_blocking(lambda: reconciler.resolve_download(resolved, file))
        except ImageOptimizerError as error:
            raise _http_error(error) from error
        return _asset_response(asset, disposition="attachment")

    @app.get("/api/thumbnail")
    async def thumbnail_file(
        session: Optional[str] = Query(None),
        file: Optional[str] = Query(None),
    ) -> FileResponse:
        resolved = _require_session(session, parameter="session")
        if not file:
            raise _missing_parameter("file")
        try:
            asset = await _run_blocking(lambda: reconciler.resolve_thumbnail(resolved, file))
        except ImageOptimizerError as error:
            raise _http_error(error) from error
        return _asset_response(asset, disposition="inline")

    @app.get("/api/archive")
    async def download_archive(session: Optional[str] = Query(None)) -> Response:
        resolved = _require_session(session, parameter="session")
        try:
            content = await _run_blocking(lambda: reconciler.build_archive(resolved))
        except ImageOptimizerError as error:
            raise _http_error(error) from error
        LOGGER.debug("Prepared archive of %d bytes", len(content))
        return Response(
            content=content,
            media_type="application/zip",
            headers={"Content-Disposition": 'attachment; filename="converted_images.zip"'},
        )

    return app


__all__ = ["create_app"]
