"""``layerforge config`` - show the resolved configuration and runtime env."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from layerforge.assembly.layout import runtime_environment
from layerforge.cli.options import config_file_option, profile_option, resolve_or_exit, set_option
from layerforge.monitor.renderer import BuildRenderer

console = Console()


def config_cmd(
    profile: Optional[str] = profile_option(),
    assignments: list[str] = set_option(),
    config_file: Optional[Path] = config_file_option(),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Resolve the build configuration and print it with the runtime environment."""
    config = resolve_or_exit(assignments, profile, config_file)
    env = runtime_environment(config)

    if as_json:
        typer.echo(json.dumps({
            "profile": config.profile,
            "fingerprint": config.fingerprint(),
            "values": dict(config.values),
            "sources": dict(config.sources),
            "runtime_environment": env,
        }, indent=2))
        return

    renderer = BuildRenderer(console=console)
    console.print(renderer.config_table(config))
    console.print()
    console.print(renderer.env_table(env))
