"""Shared helpers for building overview snapshots of stored sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from ..services.conversion import SUPPORTED_FORMATS
from ..services.storage import FileRecord, SessionRecord, SessionRepository


FORMAT_LABELS: Dict[str, str] = {
    "webp": "WebP",
    "jpeg": "JPEG",
    "png": "PNG",
}


@dataclass
class SessionOverview:
    record: SessionRecord
    files: List[FileRecord]
    original_bytes: int = 0
    converted_bytes: int = 0

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.converted_bytes


@dataclass
class OverviewSnapshot:
    sessions: List[SessionOverview]
    session_count: int
    file_count: int
    original_bytes: int
    converted_bytes: int
    format_totals: Dict[str, int] = field(default_factory=dict)


def collect_overview(repository: SessionRepository) -> OverviewSnapshot:
    """Aggregate repository data into a convenient snapshot for UIs."""

    sessions: List[SessionOverview] = []
    format_totals = {key: 0 for key in SUPPORTED_FORMATS}
    file_count = 0
    original_total = 0
    converted_total = 0

    for session_record in repository.list_sessions():
        files = repository.list_files(session_record.session_id)
        overview = SessionOverview(record=session_record, files=files)
        for record in files:
            overview.original_bytes += int(record.original_size)
            overview.converted_bytes += int(record.converted_size)
            format_totals[record.format] = format_totals.get(record.format, 0) + 1
        file_count += overview.file_count
        original_total += overview.original_bytes
        converted_total += overview.converted_bytes
        sessions.append(overview)

    return OverviewSnapshot(
        sessions=sessions,
        session_count=len(sessions),
        file_count=file_count,
        original_bytes=original_total,
        converted_bytes=converted_total,
        format_totals=format_totals,
    )


def format_bytes(size: int) -> str:
    """Return *size* as a short human readable string (``1.5 MB``)."""

    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024 or unit == "GB":
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


__all__ = [
    "FORMAT_LABELS",
    "OverviewSnapshot",
    "SessionOverview",
    "collect_overview",
    "format_bytes",
]
