"""Options and helpers shared by several CLI commands."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from layerforge.core.resolver import default_matrix, load_variant_matrix, parse_assignments, resolve
from layerforge.config import ForgeSettings
from layerforge.errors import ConfigurationError
from layerforge.models.config import BuildConfiguration

# Exit code for invalid configuration (no stage ran).
EXIT_CONFIG = 2
# Exit code for a failed build.
EXIT_BUILD = 1

err_console = Console(stderr=True)


def profile_option() -> Optional[str]:
    return typer.Option(
        None, "--profile", "-p", help="Deployment profile (standard, single-binary)."
    )


def set_option() -> list[str]:
    return typer.Option(
        [], "--set", "-s", help="Override a build parameter: name=value (repeatable)."
    )


def config_file_option() -> Optional[Path]:
    return typer.Option(
        None, "--config-file", "-c", help="TOML variant matrix replacing the built-in one."
    )


def resolve_or_exit(
    assignments: list[str],
    profile: Optional[str],
    config_file: Optional[Path],
    settings: ForgeSettings | None = None,
) -> BuildConfiguration:
    """Resolve the configuration or exit with ``EXIT_CONFIG``."""
    settings = settings or ForgeSettings()
    try:
        matrix = load_variant_matrix(config_file) if config_file else default_matrix()
        overrides: dict[str, str] = dict(settings.build_params_from_env())
        overrides.update(parse_assignments(assignments))
        return resolve(matrix, overrides, profile=profile)
    except ConfigurationError as exc:
        err_console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG) from exc
