"""Rich terminal renderer for builds, plans and configurations.

Color scheme
------------
- green     : COMPLETE
- cyan      : REUSED
- yellow    : RUNNING
- red       : FAILED
- dim       : PENDING / CANCELLED
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from layerforge.errors import AssemblyError, ModelFetchError, PackagingError, StageError
from layerforge.models.config import DISABLED, BuildConfiguration
from layerforge.models.reports import BuildReport
from layerforge.models.stages import StageRecord, StageState

# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_STATE_STYLES: dict[StageState, str] = {
    StageState.COMPLETE: "bold green",
    StageState.REUSED: "bold cyan",
    StageState.RUNNING: "bold yellow",
    StageState.FAILED: "bold red",
    StageState.PENDING: "dim",
    StageState.CANCELLED: "dim",
}

_STATE_LABELS: dict[StageState, str] = {
    StageState.COMPLETE: "[green]COMPLETE[/green]",
    StageState.REUSED: "[cyan]REUSED[/cyan]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.PENDING: "[dim]PENDING[/dim]",
    StageState.CANCELLED: "[dim]CANCELLED[/dim]",
}

# Diagnostics shown inline on failure; the full tail is in the report.
_DIAGNOSTIC_LINES = 25


def state_label(state: StageState) -> str:
    return _STATE_LABELS.get(state, state.value)


class BuildRenderer:
    """Renders build state as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def stage_table(self, records: Iterable[StageRecord]) -> Table:
        """Per-stage outcome table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Stage", min_width=22)
        table.add_column("State", min_width=11, justify="center")
        table.add_column("Inputs", min_width=16)
        table.add_column("Fingerprint", width=14)
        table.add_column("Time", justify="right", width=9)
        table.add_column("Details", min_width=20)

        for rec in records:
            style = _STATE_STYLES.get(rec.state, "")
            duration = f"{rec.duration_seconds:.1f}s" if rec.duration_seconds else "[dim]-[/dim]"
            table.add_row(
                f"[{style}]{rec.display_name}[/{style}]",
                state_label(rec.state),
                ", ".join(rec.inputs) or "[dim]-[/dim]",
                rec.fingerprint[:12] or "[dim]-[/dim]",
                duration,
                f"[red]{escape(rec.error)}[/red]" if rec.error else "[dim]-[/dim]",
            )
        return table

    def plan_table(self, rows: Iterable[Mapping[str, Any]]) -> Table:
        """Stage graph with cache keys and predicted reuse."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=22)
        table.add_column("Inputs", min_width=16)
        table.add_column("Parameters", min_width=20)
        table.add_column("Cache key", width=14)
        table.add_column("Plan", justify="center", width=10)

        for i, row in enumerate(rows):
            if row["reuse"]:
                plan = "[cyan]reuse[/cyan]"
            elif row["key"]:
                plan = "[yellow]build[/yellow]"
            else:
                plan = "[dim]pending[/dim]"
            table.add_row(
                str(i),
                f"{row['display_name']} [dim]({row['name']})[/dim]",
                ", ".join(row["inputs"]) or "[dim]-[/dim]",
                ", ".join(row["params"]) or "[dim]-[/dim]",
                row["key"][:12] or "[dim]unknown[/dim]",
                plan,
            )
        return table

    def config_table(self, config: BuildConfiguration) -> Table:
        """Resolved parameters with the layer each value came from."""
        table = Table(
            title=f"Build configuration [dim]{config.fingerprint()[:19]}[/dim]",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Parameter", style="bold")
        table.add_column("Value")
        table.add_column("Source", style="dim")
        for name, value in config.values.items():
            shown = "[dim]<disabled>[/dim]" if value == DISABLED else str(value)
            table.add_row(name, shown, config.sources.get(name, ""))
        return table

    def env_table(self, env: Mapping[str, str], *, title: str = "Runtime environment") -> Table:
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Variable", style="bold")
        table.add_column("Value")
        for key, value in env.items():
            table.add_row(key, value if value else '[dim]""[/dim]')
        return table

    # ------------------------------------------------------------------
    # Panels
    # ------------------------------------------------------------------

    def report_panel(self, report: BuildReport) -> Panel:
        """Stage table plus summary for a finished build."""
        table = self.stage_table(report.stages)
        reused = sum(1 for r in report.stages if r.state == StageState.REUSED)
        summary_parts = [
            f"[bold]Build:[/bold] {report.build_id or '-'}",
            f"[bold]Profile:[/bold] {report.profile or '-'}",
            f"[bold]Identity:[/bold] {report.runtime_identity}",
            f"[bold]Reused:[/bold] {reused}/{len(report.stages)}",
        ]
        if report.artifact_path:
            summary_parts.append(f"[bold]Artifact:[/bold] {report.artifact_path}")
        if report.archive_path:
            summary_parts.append(f"[bold]Archive:[/bold] {report.archive_path}")

        if report.succeeded:
            title, border = "[bold green]Build succeeded[/bold green]", "green"
        else:
            title, border = "[bold red]Build failed[/bold red]", "red"
        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title=title,
            border_style=border,
            padding=(1, 2),
        )

    def print_report(self, report: BuildReport) -> None:
        self.console.print(self.report_panel(report))

    def print_failure(self, error: StageError, config: BuildConfiguration | None = None) -> None:
        """Failing stage, message, diagnostics tail and configuration."""
        lines = [
            f"[bold]Stage:[/bold]   {error.stage or '-'}",
            f"[bold]Error:[/bold]   {type(error).__name__}: {escape(error.message)}",
        ]
        if isinstance(error, ModelFetchError):
            lines.append(f"[bold]Model:[/bold]   {error.kind}:{error.identifier}")
        if isinstance(error, PackagingError) and error.missing_module:
            lines.append(f"[bold]Missing:[/bold] {error.missing_module}")
        if isinstance(error, AssemblyError) and error.violations:
            lines.append(f"[bold]Violations:[/bold] {len(error.violations)}")
        if error.diagnostics:
            tail = error.diagnostics.splitlines()[-_DIAGNOSTIC_LINES:]
            lines += ["", "[bold]Diagnostics:[/bold]"] + [escape(line) for line in tail]

        body: list[Any] = [Text.from_markup("\n".join(lines))]
        if config is not None:
            body += [Text(""), self.config_table(config)]
        self.console.print(
            Panel(Group(*body), title="[bold red]Build failed[/bold red]", border_style="red")
        )

    def print_transition(self, name: str, state: StageState) -> None:
        """One line per stage state change, for live progress."""
        self.console.print(f"  {state_label(state):<28} {name}")
