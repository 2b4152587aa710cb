"""Batch conversion of uploads and re-conversions into a session."""

from __future__ import annotations

import contextvars
import logging
import sqlite3
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..processing.imaging import ImageCodecError
from .errors import (
    ImageOptimizerError,
    InvalidPath,
    ProcessingFailed,
    SourceNotFound,
    UnsupportedFormat,
    UnsupportedMediaType,
)
from .events import emit_item_event
from .layout import AssetLayout
from .naming import (
    derive_display_name,
    derive_reconvert_name,
    derive_storage_name,
    format_timestamp,
    sanitize_base_name,
    sanitize_session_id,
    split_name,
    thumbnail_name_for,
)
from .storage import FileRecord, NameSnapshot, SessionRepository, utc_timestamp


LOGGER = logging.getLogger(__name__)

SUPPORTED_FORMATS: Tuple[str, ...] = ("webp", "jpeg", "png")
FORMAT_ALIASES: Dict[str, str] = {"jpg": "jpeg"}
ALLOWED_MEDIA_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})


class ItemState(str, Enum):
    WAITING = "waiting"
    CONVERTING = "converting"
    CONVERTED = "converted"
    FAILED = "failed"


class ImageCodec(Protocol):
    def convert(self, data: bytes, fmt: str) -> bytes:
        ...

    def thumbnail(self, data: bytes) -> bytes:
        ...


def normalize_format(raw: Optional[str]) -> str:
    """Return the canonical output format for *raw* or raise :class:`UnsupportedFormat`."""

    value = (raw or "").strip().lower().lstrip(".")
    value = FORMAT_ALIASES.get(value, value)
    if value not in SUPPORTED_FORMATS:
        raise UnsupportedFormat(
            f"Unsupported format '{raw}'. Choose one of: {', '.join(SUPPORTED_FORMATS)}"
        )
    return value


def normalize_media_type(raw: Optional[str]) -> str:
    return (raw or "").split(";", 1)[0].strip().lower()


@dataclass
class FreshUpload:
    data: bytes
    filename: str
    content_type: Optional[str] = None


@dataclass
class ReconvertRequest:
    source_display_name: str
    desired_display_name: str = ""


@dataclass
class ConvertedFile:
    display_name: str
    storage_name: str
    format: str
    thumbnail_name: str
    original_size: int
    converted_size: int

    @classmethod
    def from_record(cls, record: FileRecord) -> "ConvertedFile":
        return cls(
            display_name=record.display_name,
            storage_name=record.storage_name,
            format=record.format,
            thumbnail_name=record.thumbnail_name,
            original_size=int(record.original_size),
            converted_size=int(record.converted_size),
        )

    @property
    def compression_ratio(self) -> float:
        """Percentage of the original size saved by the conversion."""

        if self.original_size <= 0:
            return 0.0
        saved = self.original_size - self.converted_size
        return round(100.0 * saved / self.original_size, 1)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "storageName": self.storage_name,
            "format": self.format,
            "thumbnailName": self.thumbnail_name,
            "originalSize": self.original_size,
            "convertedSize": self.converted_size,
            "compressionRatio": self.compression_ratio,
        }


@dataclass
class ItemFailure:
    name: str
    error: str
    message: str

    @classmethod
    def from_error(cls, name: str, error: ImageOptimizerError) -> "ItemFailure":
        return cls(name=name, error=error.code, message=error.message)

    def as_payload(self) -> Dict[str, str]:
        return {"name": self.name, "error": self.error, "message": self.message}


@dataclass
class BatchResult:
    session_id: str
    converted: List[ConvertedFile] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.converted

    def as_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "files": [item.as_payload() for item in self.converted],
            "failures": [item.as_payload() for item in self.failures],
        }


@dataclass
class _PlannedItem:
    label: str
    upload: Optional[FreshUpload] = None
    display_name: str = ""
    storage_name: str = ""
    thumbnail_name: str = ""
    original_name: str = ""
    created_at: str = ""
    state: ItemState = ItemState.WAITING
    failure: Optional[ItemFailure] = None
    result: Optional[ConvertedFile] = None


class ConversionOrchestrator:
    """Plan a batch against a snapshot of the session, then convert items in parallel.

    Names are assigned sequentially before any conversion starts so that the
    items of one batch never compete for the same storage, thumbnail or
    display name. Each item then runs on the orchestrator's worker pool and
    either commits a record or reports an :class:`ItemFailure` without
    affecting its siblings.
    """

    def __init__(
        self,
        repository: SessionRepository,
        layout: AssetLayout,
        codec: ImageCodec,
        *,
        max_workers: int = 4,
    ) -> None:
        self._repository = repository
        self._layout = layout
        self._codec = codec
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="image-conversion",
        )
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True, cancel_futures=True)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def submit_batch(
        self,
        fmt: Optional[str],
        session_id: Optional[str] = None,
        uploads: Sequence[FreshUpload] = (),
        reconverts: Sequence[ReconvertRequest] = (),
    ) -> BatchResult:
        target_format = normalize_format(fmt)
        for request in reconverts:
            if not (request.source_display_name or "").strip():
                raise ProcessingFailed("Every re-convert entry needs a source file name")

        resolved_session = self._resolve_session(session_id)
        result = BatchResult(session_id=resolved_session)
        if not uploads and not reconverts:
            LOGGER.debug("Empty batch for session %s; nothing to do", resolved_session)
            return result

        try:
            items = self._plan(resolved_session, target_format, uploads, reconverts)
        except ImageOptimizerError:
            raise
        except (OSError, sqlite3.Error) as error:
            LOGGER.exception("Planning batch for session %s failed", resolved_session)
            raise ProcessingFailed(f"Unable to prepare session: {error}") from error

        LOGGER.info(
            "Converting %d item(s) to %s for session %s",
            len(items),
            target_format,
            resolved_session,
        )
        pending: List[Tuple[_PlannedItem, Future]] = []
        for item in items:
            if item.failure is not None:
                continue
            context = contextvars.copy_context()
            future = self._executor.submit(
                context.run, self._process, resolved_session, target_format, item
            )
            pending.append((item, future))

        for item, future in pending:
            try:
                item.result = future.result()
            except ImageOptimizerError as error:
                item.failure = ItemFailure.from_error(item.label, error)

        for item in items:
            if item.result is not None:
                result.converted.append(item.result)
            elif item.failure is not None:
                result.failures.append(item.failure)

        if not result.converted:
            self._release_if_empty(resolved_session)
        return result

    @staticmethod
    def _resolve_session(session_id: Optional[str]) -> str:
        """Return the client session id unchanged, or a fresh one when none was given.

        An identifier that sanitisation would alter is rejected rather than
        rewritten, so a crafted value cannot continue some other session.
        """

        requested = (session_id or "").strip()
        if not requested:
            return uuid.uuid4().hex
        if sanitize_session_id(requested) != requested:
            raise InvalidPath("Invalid session identifier")
        return requested

    def _release_if_empty(self, session_id: str) -> None:
        """Drop a session that a fully failed batch left without any file."""

        try:
            if self._repository.count_remaining(session_id) > 0:
                return
            self._layout.remove_session_tree(session_id)
            self._repository.delete_session(session_id)
        except (OSError, sqlite3.Error) as error:
            LOGGER.warning("Could not release empty session %s: %s", session_id, error)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def _plan(
        self,
        session_id: str,
        fmt: str,
        uploads: Sequence[FreshUpload],
        reconverts: Sequence[ReconvertRequest],
    ) -> List[_PlannedItem]:
        self._repository.create_if_absent(session_id)
        self._layout.ensure_session_dirs(session_id)
        snapshot = self._repository.used_names(session_id)
        stamp = format_timestamp()

        items: List[_PlannedItem] = []
        for upload in uploads:
            item = _PlannedItem(label=upload.filename or "image", upload=upload)
            item.created_at = utc_timestamp()
            media_type = normalize_media_type(upload.content_type)
            if media_type not in ALLOWED_MEDIA_TYPES:
                self._fail(
                    item,
                    session_id,
                    UnsupportedMediaType(
                        f"'{item.label}' has unsupported type '{media_type or 'unknown'}'"
                    ),
                )
            else:
                self._plan_upload(item, upload, fmt, snapshot)
            items.append(item)

        for request in reconverts:
            item = _PlannedItem(label=request.source_display_name.strip())
            item.created_at = utc_timestamp()
            self._plan_reconvert(item, request, fmt, snapshot, stamp)
            items.append(item)

        for item in items:
            if item.failure is None:
                emit_item_event(
                    ItemState.WAITING.value,
                    item.label,
                    session_id=session_id,
                    payload={"storage_name": item.storage_name},
                )
        return items

    @staticmethod
    def _plan_upload(
        item: _PlannedItem,
        upload: FreshUpload,
        fmt: str,
        snapshot: NameSnapshot,
    ) -> None:
        base, extension = split_name(upload.filename)
        safe_base = sanitize_base_name(base)

        item.display_name = derive_display_name(base, snapshot.displays_for(fmt))
        item.storage_name = derive_storage_name(
            safe_base, fmt, snapshot.output_names, with_thumbnail=True
        )
        item.thumbnail_name = thumbnail_name_for(item.storage_name)
        item.original_name = derive_storage_name(safe_base, extension, snapshot.original_names)

        snapshot.claim_output(item.storage_name, item.thumbnail_name)
        snapshot.claim_display(fmt, item.display_name)
        snapshot.original_names.add(item.original_name)

    @staticmethod
    def _plan_reconvert(
        item: _PlannedItem,
        request: ReconvertRequest,
        fmt: str,
        snapshot: NameSnapshot,
        stamp: str,
    ) -> None:
        desired = (request.desired_display_name or "").strip() or item.label

        item.display_name = derive_display_name(desired, snapshot.displays_for(fmt))
        item.storage_name = derive_reconvert_name(
            desired,
            stamp,
            extension=fmt,
            taken=snapshot.output_names,
            with_thumbnail=True,
        )
        item.thumbnail_name = thumbnail_name_for(item.storage_name)

        snapshot.claim_output(item.storage_name, item.thumbnail_name)
        snapshot.claim_display(fmt, item.display_name)

    @staticmethod
    def _fail(item: _PlannedItem, session_id: str, error: ImageOptimizerError) -> None:
        item.state = ItemState.FAILED
        item.failure = ItemFailure.from_error(item.label, error)
        emit_item_event(
            ItemState.FAILED.value,
            item.label,
            session_id=session_id,
            payload={"error": error.code, "message": error.message},
            level=logging.WARNING,
        )

    # ------------------------------------------------------------------
    # Conversion (runs on the worker pool)
    # ------------------------------------------------------------------
    def _process(self, session_id: str, fmt: str, item: _PlannedItem) -> ConvertedFile:
        item.state = ItemState.CONVERTING
        emit_item_event(ItemState.CONVERTING.value, item.label, session_id=session_id)
        written: List[Path] = []
        try:
            if item.upload is not None:
                record = self._convert_upload(session_id, fmt, item, item.upload, written)
            else:
                record = self._convert_reconvert(session_id, fmt, item, written)
            self._repository.insert_or_replace(record)
        except ImageOptimizerError as error:
            self._discard(session_id, written)
            self._fail(item, session_id, error)
            raise
        except ImageCodecError as error:
            self._discard(session_id, written)
            failure = ProcessingFailed(f"Could not convert '{item.label}': {error}")
            self._fail(item, session_id, failure)
            raise failure from error
        except (OSError, sqlite3.Error) as error:
            LOGGER.exception("Conversion of '%s' in session %s failed", item.label, session_id)
            self._discard(session_id, written)
            failure = ProcessingFailed(f"Could not store '{item.label}': {error}")
            self._fail(item, session_id, failure)
            raise failure from error

        item.state = ItemState.CONVERTED
        emit_item_event(
            ItemState.CONVERTED.value,
            item.label,
            session_id=session_id,
            payload={
                "storage_name": record.storage_name,
                "original_size": record.original_size,
                "converted_size": record.converted_size,
            },
        )
        return ConvertedFile.from_record(record)

    def _convert_upload(
        self,
        session_id: str,
        fmt: str,
        item: _PlannedItem,
        upload: FreshUpload,
        written: List[Path],
    ) -> FileRecord:
        data = upload.data

        written.append(self._layout.resolve_original_path(session_id, item.original_name))
        self._layout.write_original(session_id, item.original_name, data)

        converted = self._codec.convert(data, fmt)
        written.append(self._layout.resolve_output_path(session_id, item.storage_name))
        self._layout.write_output(session_id, item.storage_name, converted)

        thumbnail = self._codec.thumbnail(data)
        written.append(self._layout.resolve_output_path(session_id, item.thumbnail_name))
        self._layout.write_thumbnail(session_id, item.thumbnail_name, thumbnail)

        return FileRecord(
            session_id=session_id,
            display_name=item.display_name,
            storage_name=item.storage_name,
            format=fmt,
            thumbnail_name=item.thumbnail_name,
            original_file_name=item.original_name,
            original_size=len(data),
            converted_size=len(converted),
            created_at=item.created_at,
        )

    def _convert_reconvert(
        self,
        session_id: str,
        fmt: str,
        item: _PlannedItem,
        written: List[Path],
    ) -> FileRecord:
        source = self._repository.find_by_display_name(session_id, item.label)
        if source is None:
            raise SourceNotFound(f"No file named '{item.label}' in this session")

        original = self._layout.read_original(session_id, source.original_file_name)
        data = self._layout.read_output(session_id, source.storage_name) or original
        if not data:
            raise SourceNotFound(f"The stored bytes for '{item.label}' are missing")

        converted = self._codec.convert(data, fmt)
        written.append(self._layout.resolve_output_path(session_id, item.storage_name))
        self._layout.write_output(session_id, item.storage_name, converted)

        thumbnail = self._codec.thumbnail(original or data)
        written.append(self._layout.resolve_output_path(session_id, item.thumbnail_name))
        self._layout.write_thumbnail(session_id, item.thumbnail_name, thumbnail)

        return FileRecord(
            session_id=session_id,
            display_name=item.display_name,
            storage_name=item.storage_name,
            format=fmt,
            thumbnail_name=item.thumbnail_name,
            original_file_name=source.original_file_name,
            original_size=int(source.original_size),
            converted_size=len(converted),
            created_at=item.created_at,
        )

    def _discard(self, session_id: str, paths: Sequence[Path]) -> None:
        for path in paths:
            self._layout.delete_if_exists(path, session_id=session_id)


__all__ = [
    "ALLOWED_MEDIA_TYPES",
    "BatchResult",
    "ConversionOrchestrator",
    "ConvertedFile",
    "FORMAT_ALIASES",
    "FreshUpload",
    "ImageCodec",
    "ItemFailure",
    "ItemState",
    "ReconvertRequest",
    "SUPPORTED_FORMATS",
    "normalize_format",
    "normalize_media_type",
]
