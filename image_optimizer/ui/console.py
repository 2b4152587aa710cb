"""Plain-text overview of stored sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..services.storage import SessionRepository
from .overview import SessionOverview, collect_overview, format_bytes


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console UI that surfaces stored session metadata."""

    def __init__(self, repository: SessionRepository) -> None:
        self._repository = repository

    def run(self) -> None:
        """Render every session and its files to stdout."""

        snapshot = collect_overview(self._repository)
        print("Image Optimizer – Session Overview")
        print("=" * 40)
        if snapshot.session_count == 0:
            print("No sessions stored.")
            return

        for section in self._build_sections(snapshot.sessions):
            print(section.title)
            print("-" * len(section.title))
            has_entries = False
            for entry in section.entries:
                has_entries = True
                print(entry)
            if not has_entries:
                print("(empty)")
            print()

        print(
            f"{snapshot.session_count} session(s), {snapshot.file_count} file(s), "
            f"{format_bytes(snapshot.original_bytes)} -> {format_bytes(snapshot.converted_bytes)}"
        )

    def _build_sections(self, sessions: Iterable[SessionOverview]) -> Iterable[ConsoleSection]:
        for overview in sessions:
            yield ConsoleSection(
                title=f"Session: {overview.record.session_id} (created {overview.record.created_at})",
                entries=self._format_files(overview),
            )

    @staticmethod
    def _format_files(overview: SessionOverview) -> Iterable[str]:
        for record in overview.files:
            yield (
                f"  {record.display_name} [{record.format}] -> {record.storage_name} "
                f"({format_bytes(record.original_size)} -> {format_bytes(record.converted_size)})"
            )


__all__ = ["ConsoleUI"]
