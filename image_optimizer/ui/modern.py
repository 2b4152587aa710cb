"""A Rich-powered console front-end for inspecting stored sessions."""

from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..services.storage import SessionRepository
from .overview import FORMAT_LABELS, OverviewSnapshot, SessionOverview, collect_overview, format_bytes


class ModernUI:
    """Render a session overview using Rich widgets."""

    def __init__(self, repository: SessionRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self) -> None:
        snapshot = collect_overview(self._repository)
        console = self._console

        console.rule("[bold magenta]Image Optimizer Sessions")

        if snapshot.session_count == 0:
            console.print(
                Panel(
                    "No sessions are stored.\n"
                    "Start the server with [bold]python run.py serve[/bold] and convert an image.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        sessions_panel = Panel(
            self._build_sessions_table(snapshot.sessions),
            title="Sessions",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([sessions_panel, self._build_stats_panel(snapshot)], expand=True))
        console.print()
        console.print(
            Text("Tip: pass --style console for the plain layout.", style="dim"),
            justify="center",
        )

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_sessions_table(sessions: Iterable[SessionOverview]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Session", style="bold")
        table.add_column("Created", style="dim")
        table.add_column("Files", justify="right")
        table.add_column("Original", justify="right")
        table.add_column("Converted", justify="right", style="green")

        for overview in sessions:
            table.add_row(
                overview.record.session_id,
                overview.record.created_at,
                str(overview.file_count),
                format_bytes(overview.original_bytes),
                format_bytes(overview.converted_bytes),
            )
        return table

    @staticmethod
    def _build_stats_panel(snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Sessions", str(snapshot.session_count))
        metrics.add_row("Files", str(snapshot.file_count))
        metrics.add_row("Original", format_bytes(snapshot.original_bytes))
        metrics.add_row("Converted", format_bytes(snapshot.converted_bytes))

        format_table = Table.grid(expand=True, padding=(0, 1))
        format_table.add_column(style="dim")
        format_table.add_column(justify="right", style="bold")
        for key, label in FORMAT_LABELS.items():
            format_table.add_row(label, str(snapshot.format_totals.get(key, 0)))

        body = Group(metrics, Rule(style="magenta"), format_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["ModernUI"]
