"""``layerforge audit ROOTFS`` - check an assembled tree or exported archive.

Directories are checked for ownership, group-writable/setgid modes and
build-only files; ``.tar`` archives for header ownership.
"""

from __future__ import annotations

import tarfile
from pathlib import Path

import typer
from rich.console import Console

from layerforge.assembly.archive import audit_archive
from layerforge.assembly.layout import SITE_PACKAGES_DIR
from layerforge.assembly.permissions import audit_tree
from layerforge.models.identity import RuntimeIdentity

console = Console()


def audit_cmd(
    target: Path = typer.Argument(..., help="Assembled rootfs directory or rootfs.tar."),
    uid: int = typer.Option(1000, "--uid", help="Expected runtime user id."),
    gid: int = typer.Option(1000, "--gid", help="Expected runtime group id."),
    check_owner: bool = typer.Option(
        True, "--check-owner/--no-check-owner", help="Verify file ownership."
    ),
) -> None:
    """Audit ownership, permissions and forbidden files of a final artifact."""
    try:
        identity = RuntimeIdentity(uid=uid, gid=gid)
    except ValueError as exc:
        console.print(f"[bold red]Invalid identity:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc

    if target.is_dir():
        violations = audit_tree(
            target, identity, check_owner=check_owner, vendored=(SITE_PACKAGES_DIR,)
        )
    elif target.is_file() and tarfile.is_tarfile(target):
        violations = audit_archive(target, identity)
    else:
        console.print(f"[bold red]Not a directory or tar archive:[/bold red] {target}")
        raise typer.Exit(code=2)

    if not violations:
        console.print(f"[green]{target} is clean for {identity.spec}.[/green]")
        return

    console.print(f"[bold red]{len(violations)} violation(s) in {target}:[/bold red]")
    for line in violations[:100]:
        console.print(f"  [red]- {line}[/red]")
    if len(violations) > 100:
        console.print(f"  [dim]... and {len(violations) - 100} more[/dim]")
    raise typer.Exit(code=1)
