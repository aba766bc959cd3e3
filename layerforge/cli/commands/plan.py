"""``layerforge plan`` - show the stage graph without executing anything.

Lists every stage with its inputs, declared parameters, cache key and
whether a committed artifact would be reused, plus the backend dependency
selection the configuration implies.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from layerforge.cli.options import (
    EXIT_CONFIG,
    config_file_option,
    err_console,
    profile_option,
    resolve_or_exit,
    set_option,
)
from layerforge.config import ForgeSettings
from layerforge.core.dependencies import select_dependency_set
from layerforge.core.orchestrator import BuildOrchestrator
from layerforge.errors import ConfigurationError
from layerforge.monitor.renderer import BuildRenderer

console = Console()


def plan_cmd(
    frontend: Path = typer.Option(
        Path("frontend"), "--frontend", "-f", help="Frontend project directory."
    ),
    backend: Path = typer.Option(
        Path("backend"), "--backend", "-b", help="Backend source directory."
    ),
    profile: Optional[str] = profile_option(),
    assignments: list[str] = set_option(),
    config_file: Optional[Path] = config_file_option(),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
) -> None:
    """Show stages, cache keys and predicted reuse for a configuration."""
    settings = ForgeSettings()
    config = resolve_or_exit(assignments, profile, config_file, settings)
    orchestrator = BuildOrchestrator(frontend, backend, settings=settings, matrix_path=config_file)
    try:
        rows = orchestrator.plan(config)
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG) from exc
    selection = select_dependency_set(config)

    if as_json:
        payload = {
            "configuration": dict(config.values),
            "fingerprint": config.fingerprint(),
            "dependencies": selection.model_dump(),
            "stages": rows,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    renderer = BuildRenderer(console=console)
    console.print(renderer.plan_table(rows))
    console.print()
    console.print(f"[bold]Accelerator:[/bold] {selection.accelerator}  "
                  f"[bold]Index:[/bold] {selection.accelerator_index_url}")
    if selection.forbidden_distributions:
        console.print(
            "[bold]Forbidden:[/bold] "
            + ", ".join(selection.forbidden_distributions + [f"+{v}" for v in selection.forbidden_local_versions])
        )
    console.print(f"[bold]System packages:[/bold] {', '.join(selection.system_packages)}")
