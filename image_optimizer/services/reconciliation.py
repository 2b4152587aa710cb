"""Read-path self-healing, deletion and retention for session assets."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from ..processing.archive import build_zip_archive
from .errors import InvalidPath, SourceNotFound
from .layout import AssetLayout
from .storage import FileRecord, SessionRepository


LOGGER = logging.getLogger(__name__)

Archiver = Callable[[Iterable[Tuple[str, bytes]]], bytes]

_MEDIA_TYPES = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
}


def guess_media_type(name: str) -> str:
    extension = name.rpartition(".")[2].lower()
    if extension in _MEDIA_TYPES:
        return _MEDIA_TYPES[extension]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def download_name_for(record: FileRecord) -> str:
    """Return ``<display name>.<format>`` with path separators neutralised."""

    stem = record.display_name.replace("/", "_").replace("\\", "_").strip() or "image"
    return f"{stem}.{record.format}"


@dataclass(frozen=True)
class ResolvedAsset:
    path: Path
    download_name: str
    media_type: str


@dataclass(frozen=True)
class ReapSummary:
    sessions_removed: int
    directories_removed: int


class SessionReconciler:
    """Keep the session index and the files on disk in agreement."""

    def __init__(
        self,
        repository: SessionRepository,
        layout: AssetLayout,
        *,
        archiver: Archiver = build_zip_archive,
    ) -> None:
        self._repository = repository
        self._layout = layout
        self._archiver = archiver

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    def _is_intact(self, record: FileRecord) -> bool:
        try:
            return self._layout.output_exists(
                record.session_id, record.storage_name
            ) and self._layout.output_exists(record.session_id, record.thumbnail_name)
        except InvalidPath:
            return False

    def list_files(self, session_id: str) -> List[FileRecord]:
        """Return the session's records, dropping any whose output or thumbnail is gone.

        Stale records are removed the same way :meth:`delete_one` removes a
        file, so leftover outputs, unreferenced originals and an emptied
        session do not outlive them.
        """

        surviving: List[FileRecord] = []
        purged = 0
        for record in self._repository.list_files(session_id):
            if self._is_intact(record):
                surviving.append(record)
                continue
            LOGGER.info(
                "Purging stale record '%s' from session %s; its files are missing",
                record.storage_name,
                session_id,
            )
            self._remove_record(record)
            purged += 1
        if purged and self._repository.count_remaining(session_id) == 0:
            self._drop_session(session_id)
        return surviving

    def resolve_download(self, session_id: str, storage_name: str) -> ResolvedAsset:
        path = self._layout.resolve_output_path(session_id, storage_name)
        record = self._repository.find_by_storage_name(session_id, storage_name)
        if record is None or not path.is_file():
            raise SourceNotFound(f"File '{storage_name}' was not found")
        return ResolvedAsset(
            path=path,
            download_name=download_name_for(record),
            media_type=guess_media_type(record.storage_name),
        )

    def resolve_thumbnail(self, session_id: str, thumbnail_name: str) -> ResolvedAsset:
        path = self._layout.resolve_output_path(session_id, thumbnail_name)
        record = self._repository.find_by_thumbnail_name(session_id, thumbnail_name)
        if record is None or not path.is_file():
            raise SourceNotFound(f"Thumbnail '{thumbnail_name}' was not found")
        return ResolvedAsset(path=path, download_name=thumbnail_name, media_type="image/webp")

    def build_archive(self, session_id: str) -> bytes:
        """Bundle every surviving output of the session into a ZIP archive."""

        entries: List[Tuple[str, bytes]] = []
        for record in self.list_files(session_id):
            data = self._layout.read_output(session_id, record.storage_name)
            if data is None:
                continue
            entries.append((download_name_for(record), data))
        if not entries:
            raise SourceNotFound("This session has no converted files")
        LOGGER.debug("Archiving %d file(s) for session %s", len(entries), session_id)
        return self._archiver(entries)

    # ------------------------------------------------------------------
    # Delete path
    # ------------------------------------------------------------------
    def delete_one(self, session_id: str, name: str) -> bool:
        """Delete one file by storage name or display name.

        The original upload survives while any other record still refers to
        it. Removing the last record also removes the session itself.
        """

        record = self._repository.find_by_storage_name(session_id, name)
        if record is None:
            record = self._repository.find_by_display_name(session_id, name)
        if record is None:
            LOGGER.debug("Nothing named '%s' in session %s; delete is a no-op", name, session_id)
            return False

        self._remove_record(record)
        if self._repository.count_remaining(session_id) == 0:
            self._drop_session(session_id)
        return True

    def _delete_output(self, session_id: str, file_name: str) -> None:
        try:
            path = self._layout.resolve_output_path(session_id, file_name)
        except InvalidPath:
            return
        self._layout.delete_if_exists(path, session_id=session_id)

    def _remove_record(self, record: FileRecord) -> None:
        session_id = record.session_id
        for file_name in (record.storage_name, record.thumbnail_name):
            self._delete_output(session_id, file_name)
        self._repository.delete_record(session_id, record.storage_name)

        if self._repository.count_original_references(session_id, record.original_file_name):
            LOGGER.debug(
                "Keeping original '%s'; other files in session %s still use it",
                record.original_file_name,
                session_id,
            )
            return
        try:
            original = self._layout.resolve_original_path(session_id, record.original_file_name)
        except InvalidPath:
            return
        self._layout.delete_if_exists(original, session_id=session_id)

    def delete_all(self, session_id: str) -> int:
        records = self._repository.list_files(session_id)
        for record in records:
            for file_name in (record.storage_name, record.thumbnail_name):
                self._delete_output(session_id, file_name)
        removed = self._repository.delete_all_for_session(session_id)
        self._layout.remove_session_tree(session_id)
        LOGGER.info("Deleted %d file(s) and the directories of session %s", removed, session_id)
        return removed

    def _drop_session(self, session_id: str) -> None:
        LOGGER.info("Session %s is empty; removing its directories", session_id)
        self._layout.remove_session_tree(session_id)
        self._repository.delete_session(session_id)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def reap_idle_sessions(
        self,
        max_age_hours: float,
        *,
        now: Optional[datetime] = None,
    ) -> ReapSummary:
        """Delete sessions idle for more than *max_age_hours* and stray directories.

        A session is idle since its newest file was written, or since it was
        created when it holds no files.
        """

        if max_age_hours < 0:
            raise ValueError("max_age_hours must not be negative")
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=max_age_hours)

        sessions = self._repository.list_sessions()
        known = {session.session_id for session in sessions}
        sessions_removed = 0
        for session in sessions:
            try:
                active = datetime.fromisoformat(session.active_since)
            except ValueError:
                LOGGER.warning(
                    "Session %s has an unreadable timestamp %r; reaping it",
                    session.session_id,
                    session.active_since,
                )
                active = cutoff
            if active.tzinfo is None:
                active = active.replace(tzinfo=timezone.utc)
            if active > cutoff:
                continue
            try:
                self.delete_all(session.session_id)
            except InvalidPath:
                self._repository.delete_all_for_session(session.session_id)
            sessions_removed += 1

        directories_removed = 0
        for session_id in list(self._layout.iter_session_dirs()):
            if session_id in known:
                continue
            if self._layout.remove_session_tree(session_id):
                directories_removed += 1

        LOGGER.info(
            "Reaped %d session(s) and %d stray director%s",
            sessions_removed,
            directories_removed,
            "y" if directories_removed == 1 else "ies",
        )
        return ReapSummary(sessions_removed=sessions_removed, directories_removed=directories_removed)


__all__ = [
    "ReapSummary",
    "ResolvedAsset",
    "SessionReconciler",
    "download_name_for",
    "guess_media_type",
]
