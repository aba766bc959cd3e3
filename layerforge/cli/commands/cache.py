"""``layerforge cache`` - inspect and verify the shared model cache."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from layerforge.config import ForgeSettings
from layerforge.modelcache.cache import ModelCache

console = Console()

cache_app = typer.Typer(
    name="cache",
    help="Inspect the shared model cache.",
    no_args_is_help=True,
    add_completion=False,
)


def _open(cache_dir: Optional[Path]) -> ModelCache:
    settings = ForgeSettings()
    return ModelCache(cache_dir or settings.model_cache_dir, verify=settings.cache_verify)


def _size(n: int) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if n < 1024 or unit == "GiB":
            return f"{n:.0f} {unit}" if unit == "B" else f"{n:.1f} {unit}"
        n /= 1024
    return str(n)


@cache_app.command(name="list", help="List cached model entries.")
def list_cmd(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Model cache root."),
) -> None:
    cache = _open(cache_dir)
    entries = cache.list_entries()
    if not entries:
        console.print(f"[dim]No cached models under {cache.root}.[/dim]")
        return

    table = Table(title=f"Model cache {cache.root}")
    table.add_column("Kind", style="cyan")
    table.add_column("Identifier")
    table.add_column("Precision")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Digest", style="dim")
    for entry in entries:
        table.add_row(
            entry.request.kind.value,
            entry.request.identifier,
            entry.request.resolved_precision,
            str(entry.file_count),
            _size(entry.total_bytes),
            entry.digest[:12],
        )
    console.print(table)


@cache_app.command(name="verify", help="Check cached files against their manifests.")
def verify_cmd(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Model cache root."),
    full: bool = typer.Option(False, "--sha256", help="Re-hash every file instead of comparing sizes."),
) -> None:
    cache = _open(cache_dir)
    entries = cache.list_entries()
    broken = 0
    for entry in entries:
        problems = cache.verify_entry(entry.path, "sha256" if full else "size")
        if problems:
            broken += 1
            console.print(f"[bold red]BROKEN[/bold red] {entry.request.describe()}")
            for problem in problems[:10]:
                console.print(f"  [red]- {problem}[/red]")
        else:
            console.print(f"[green]OK[/green]     {entry.request.describe()}")

    console.print(f"\n{len(entries) - broken}/{len(entries)} entries valid.")
    if broken:
        raise typer.Exit(code=1)
