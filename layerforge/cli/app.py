"""Main Typer application - imports and registers all CLI commands.

Entry point: ``layerforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from layerforge import __version__
from layerforge.cli.commands.audit import audit_cmd
from layerforge.cli.commands.build import build_cmd
from layerforge.cli.commands.cache import cache_app
from layerforge.cli.commands.config_cmd import config_cmd
from layerforge.cli.commands.plan import plan_cmd
from layerforge.config import ForgeSettings

app = typer.Typer(
    name="layerforge",
    help="Layerforge: staged, cached builds of a self-contained application runtime.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build the runtime artifact for one configuration.")(build_cmd)
app.command(name="plan", help="Show the stage plan and predicted cache reuse.")(plan_cmd)
app.command(name="config", help="Show the resolved configuration and runtime env.")(config_cmd)
app.command(name="audit", help="Audit an assembled rootfs or exported archive.")(audit_cmd)
app.add_typer(cache_app, name="cache")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def root(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override LAYERFORGE_LOG_LEVEL for this invocation."
    ),
    version: bool = typer.Option(False, "--version", help="Print the version and exit."),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit()
    _configure_logging(log_level or ForgeSettings().log_level)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
