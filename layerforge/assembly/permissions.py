"""Ownership and permission normalization for the assembled tree, plus audit.

Normalized modes:

- directories: group ``rwx`` plus the set-group-id bit, so files created at
  runtime inherit the runtime group even when the platform reassigns the
  numeric user id at launch;
- regular files: group ``rw``, plus group ``x`` where the owner may execute;
- symlinks: ownership only (link modes are not meaningful on Linux).
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterable, Iterator
from pathlib import Path

from layerforge.core.fs import CREDENTIAL_PATTERNS, VCS_PATTERNS, matches_any
from layerforge.models.identity import RuntimeIdentity

logger = logging.getLogger(__name__)

DIR_BITS = stat.S_ISGID | stat.S_IRWXG
FILE_BITS = stat.S_IRGRP | stat.S_IWGRP

# Names that must never appear in a final tree.
FORBIDDEN_NAMES: tuple[str, ...] = VCS_PATTERNS + ("node_modules",) + CREDENTIAL_PATTERNS

# Inside vendored package trees only source-control metadata is forbidden;
# libraries legitimately ship files such as ``cacert.pem``.
VENDORED_FORBIDDEN_NAMES: tuple[str, ...] = VCS_PATTERNS


def walk(root: Path) -> Iterator[Path]:
    """Every entry under *root*, *root* included, without following links."""
    yield root
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in sorted(dirnames) + sorted(filenames):
            yield base / name


def normalize_permissions(root: Path) -> int:
    """Apply the group-writable/setgid policy below *root*. Returns the count."""
    count = 0
    for path in walk(root):
        st = path.lstat()
        if stat.S_ISLNK(st.st_mode):
            continue
        mode = stat.S_IMODE(st.st_mode)
        if stat.S_ISDIR(st.st_mode):
            target = mode | DIR_BITS | stat.S_IRWXU
        else:
            target = mode | FILE_BITS
            if mode & stat.S_IXUSR:
                target |= stat.S_IXGRP
        if target != mode:
            os.chmod(path, target)
        count += 1
    return count


def apply_ownership(root: Path, identity: RuntimeIdentity) -> int:
    """``lchown`` every entry below *root* to *identity*. Returns the count."""
    count = 0
    for path in walk(root):
        os.lchown(path, identity.uid, identity.gid)
        count += 1
    logger.debug("Set ownership of %d entr(ies) to %s", count, identity.spec)
    return count


def audit_tree(
    root: Path,
    identity: RuntimeIdentity,
    *,
    check_owner: bool = True,
    vendored: Iterable[str] = (),
) -> list[str]:
    """Check *root* against the ownership, mode and content rules.

    Parameters
    ----------
    root:
        The assembled tree.
    identity:
        Expected owner of every entry.
    check_owner:
        Verify uid/gid.  Disabled when ownership is carried by archive
        headers instead of the filesystem.
    vendored:
        Paths relative to *root* holding third-party package trees; only
        source-control metadata is forbidden inside them.

    Returns
    -------
    list[str]
        One line per violation; empty when the tree is clean.
    """
    vendored_roots = [root / rel for rel in vendored]
    violations: list[str] = []
    for path in walk(root):
        rel = path.relative_to(root).as_posix() or "."
        st = path.lstat()

        if st.st_uid == 0 or st.st_gid == 0:
            violations.append(f"{rel}: owned by the privileged account")
        elif check_owner and (st.st_uid != identity.uid or st.st_gid != identity.gid):
            violations.append(
                f"{rel}: owned by {st.st_uid}:{st.st_gid}, expected {identity.spec}"
            )

        if stat.S_ISDIR(st.st_mode):
            if st.st_mode & DIR_BITS != DIR_BITS:
                violations.append(f"{rel}: directory mode {oct(stat.S_IMODE(st.st_mode))} lacks g+rwxs")
        elif stat.S_ISREG(st.st_mode) and st.st_mode & FILE_BITS != FILE_BITS:
            violations.append(f"{rel}: file mode {oct(stat.S_IMODE(st.st_mode))} lacks g+rw")

        if path == root:
            continue
        in_vendored = any(path == v or v in path.parents for v in vendored_roots)
        patterns = VENDORED_FORBIDDEN_NAMES if in_vendored else FORBIDDEN_NAMES
        if matches_any(path.name, patterns):
            violations.append(f"{rel}: build-only file must not ship")
    return violations
