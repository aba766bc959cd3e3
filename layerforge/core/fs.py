"""Filesystem helpers shared by stages: filtered tree copies."""

from __future__ import annotations

import fnmatch
import os
import shutil
from collections.abc import Iterable
from pathlib import Path

# Source-control metadata: never copied out of a source tree.
VCS_PATTERNS: tuple[str, ...] = (".git", ".gitignore", ".gitattributes", ".gitmodules", ".hg", ".svn")

# Tool caches and dependency trees rebuilt by the owning stage.
CACHE_PATTERNS: tuple[str, ...] = ("__pycache__", "*.pyc", "node_modules", ".pytest_cache", ".mypy_cache")

# Build-only credentials and local secret files.
CREDENTIAL_PATTERNS: tuple[str, ...] = (
    ".npmrc", ".pypirc", ".netrc", ".env", ".env.*", "*.pem", "*.key", ".dockerconfigjson",
)

BUILD_ONLY_PATTERNS: tuple[str, ...] = VCS_PATTERNS + CACHE_PATTERNS + CREDENTIAL_PATTERNS


def matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def copy_tree(
    src: Path,
    dst: Path,
    *,
    exclude: Iterable[str] = BUILD_ONLY_PATTERNS,
) -> Path:
    """Copy *src* into *dst*, skipping names matching *exclude*.

    Symlinks are copied as links.  *dst* may already exist; existing files
    are overwritten.
    """
    patterns = tuple(exclude)
    shutil.copytree(
        src,
        dst,
        symlinks=True,
        ignore=lambda _dir, names: {n for n in names if matches_any(n, patterns)},
        dirs_exist_ok=True,
    )
    return dst


def copy_into(src: Path, dst_dir: Path, *, exclude: Iterable[str] = BUILD_ONLY_PATTERNS) -> Path:
    """Copy a file or directory *src* to ``dst_dir / src.name``."""
    target = dst_dir / src.name
    if src.is_dir():
        return copy_tree(src, target, exclude=exclude)
    dst_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, target, follow_symlinks=False)
    return target


def find_matching(root: Path, patterns: Iterable[str]) -> list[Path]:
    """Every path under *root* whose name matches one of *patterns*."""
    patterns = tuple(patterns)
    hits: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            if matches_any(name, patterns):
                hits.append(Path(dirpath) / name)
    return sorted(hits)
