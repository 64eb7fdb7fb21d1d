"""CLI output using rich."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from ..domain.models import ResultStatus, SyncResult

STATUS_STYLES = {
    ResultStatus.SUCCESS: ("✅", "green"),
    ResultStatus.PARTIAL: ("⚠️ ", "yellow"),
    ResultStatus.FAILURE: ("❌", "red"),
    ResultStatus.DRY_RUN: ("🔍", "blue"),
}


class SyncConsole:
    """Minimal rich front end for sync runs."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def show_banner(self, sync_type: str) -> None:
        banner = Text("recordsync", style="bold blue")
        banner.append(f" • {sync_type}", style="dim")
        self.console.print(Panel(banner, border_style="blue"))

    def validate_config(self, issues: List[Dict[str, Any]]) -> bool:
        """Show configuration validation results."""
        if issues:
            self.console.print("❌ [red bold]Configuration Error[/red bold]")
            for issue in issues:
                self.console.print(f"   • {issue['field']}: {issue['message']}", style="red")
            return False
        self.console.print("✅ [green]Configuration validated[/green]")
        return True

    def show_batch(self, batch_number: int, stats: Dict[str, int], failed: bool = False) -> None:
        marker = "[red]failed[/red]" if failed else "[green]ok[/green]"
        self.console.print(
            f"   batch {batch_number}: {marker} • "
            f"{stats['created']} created • {stats['updated']} updated • "
            f"{stats['existing']} existing • {stats['errors']} errors",
            highlight=False,
        )

    def show_result(self, result: SyncResult) -> None:
        """Show a framed summary of a sync run."""
        icon, color = STATUS_STYLES[result.status]
        stats = result.stats
        summary = (
            f"{icon} [{color} bold]{result.status.value}[/{color} bold] • "
            f"[green bold]{result.processing_time_ms / 1000:.2f}s[/green bold] • "
            f"[white]{stats.total_processed} records[/white] • "
            f"{stats.created} created • {stats.updated} updated • "
            f"{stats.existing} existing • "
            f"[{'red' if stats.errors else 'dim'}]{stats.errors} errors[/]"
        )
        if result.session_id:
            summary += f"\n[dim]session {result.session_id}[/dim]"
        self.console.print(Panel(summary, border_style=color, title="Sync Summary"))

        if result.error_details:
            self._show_errors(result.error_details)

    def show_sessions(self, sessions: List[Dict[str, Any]]) -> None:
        if not sessions:
            self.console.print("[dim]No sync sessions recorded[/dim]")
            return

        table = Table(show_header=True, box=None)
        table.add_column("Session", style="cyan", overflow="ellipsis", max_width=36)
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Processed", justify="right")
        table.add_column("Errors", justify="right", style="red")
        table.add_column("Started", style="dim")

        for session in sessions:
            table.add_row(
                session["session_id"],
                session["sync_type"],
                session["status"],
                str(session["processed"]),
                str(session["errors"]),
                session["started_at"] or "",
            )
        self.console.print(table)

    def show_error(self, error: str) -> None:
        self.console.print(f"\n❌ [red bold]Error:[/red bold] {error}")

    def _show_errors(self, errors: List[Dict[str, Any]], limit: int = 20) -> None:
        table = Table(show_header=True, box=None, title="Errors")
        table.add_column("Record", style="cyan")
        table.add_column("Category", style="yellow")
        table.add_column("Message", overflow="fold")

        for error in errors[:limit]:
            record = error.get("record_id")
            if record is None and error.get("batch_number") is not None:
                record = f"batch {error['batch_number']}"
            table.add_row(
                str(record if record is not None else "-"),
                str(error.get("category", "")),
                str(error.get("detail") or error.get("message", "")),
            )
        self.console.print(table)
        if len(errors) > limit:
            self.console.print(f"[dim]... and {len(errors) - limit} more[/dim]")

    @contextmanager
    def progress_spinner(self, description: str) -> Iterator[Progress]:
        """Context manager for showing a spinner with description."""
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            console=self.console,
            transient=True,
        ) as progress:
            task = progress.add_task(description, total=None)
            try:
                yield progress
            finally:
                progress.remove_task(task)
