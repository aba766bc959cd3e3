"""``layerforge build`` - resolve, run every stage, publish the artifact.

Prints stage transitions as they happen, then the stage table.  On failure
the failing stage, its diagnostics tail and the (non-secret) configuration
are printed and the command exits non-zero; ``build-report.json`` is written
either way.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from layerforge.cli.options import (
    EXIT_BUILD,
    EXIT_CONFIG,
    config_file_option,
    err_console,
    profile_option,
    resolve_or_exit,
    set_option,
)
from layerforge.config import ForgeSettings
from layerforge.core.orchestrator import REPORT_NAME, BuildOrchestrator
from layerforge.errors import ConfigurationError, StageError
from layerforge.monitor.renderer import BuildRenderer

console = Console()


def build_cmd(
    frontend: Path = typer.Option(
        Path("frontend"), "--frontend", "-f", help="Frontend project directory."
    ),
    backend: Path = typer.Option(
        Path("backend"), "--backend", "-b", help="Backend source directory."
    ),
    profile: Optional[str] = profile_option(),
    assignments: list[str] = set_option(),
    config_file: Optional[Path] = config_file_option(),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output directory (default: LAYERFORGE_OUTPUT_DIR)."
    ),
    export: Optional[bool] = typer.Option(
        None, "--export/--no-export", help="Also export rootfs.tar owned by the runtime identity."
    ),
    max_parallel: Optional[int] = typer.Option(
        None, "--max-parallel", "-j", help="Stages run concurrently."
    ),
) -> None:
    """Build the runtime artifact for one configuration."""
    settings = ForgeSettings()
    if max_parallel is not None:
        settings = settings.model_copy(update={"max_parallel_stages": max_parallel})
    config = resolve_or_exit(assignments, profile, config_file, settings)

    renderer = BuildRenderer(console=console)
    orchestrator = BuildOrchestrator(
        frontend,
        backend,
        settings=settings,
        matrix_path=config_file,
        on_transition=renderer.print_transition,
    )
    output_dir = output or settings.output_dir

    console.print(
        f"[bold cyan]Building[/bold cyan] profile={config.profile or '-'} "
        f"flavor={config.get('backend_flavor', 'environment')} config={config.fingerprint()[:19]}"
    )
    try:
        report = orchestrator.build(config, output_dir=output_dir, export_archive=export)
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG) from exc
    except StageError as exc:
        console.print()
        last = orchestrator.engine.last_result
        if last is not None:
            console.print(renderer.stage_table(last.records))
        renderer.print_failure(exc, config)
        console.print(f"[dim]Report: {Path(output_dir) / REPORT_NAME}[/dim]")
        raise typer.Exit(code=EXIT_BUILD) from exc

    console.print()
    renderer.print_report(report)
