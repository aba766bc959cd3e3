"""Export an assembled rootfs as a tar archive owned by the runtime identity.

The archive is what container tooling imports as a layer.  Ownership is
written into the tar headers, so an archive produced by an unprivileged
builder still carries the runtime identity.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

from layerforge.models.identity import RuntimeIdentity

logger = logging.getLogger(__name__)


def export_rootfs(rootfs: Path, dest: Path, identity: RuntimeIdentity) -> Path:
    """Write *rootfs* to the tar file *dest*; return *dest*."""

    def _own(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = identity.uid
        info.gid = identity.gid
        info.uname = identity.user
        info.gname = identity.group
        return info

    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".partial")
    with tarfile.open(partial, "w", format=tarfile.PAX_FORMAT) as tar:
        tar.add(rootfs, arcname=".", recursive=True, filter=_own)
    partial.replace(dest)
    logger.info("Exported %s -> %s", rootfs, dest)
    return dest


def audit_archive(archive: Path, identity: RuntimeIdentity) -> list[str]:
    """Check every member of *archive* is owned by *identity*."""
    violations: list[str] = []
    with tarfile.open(archive, "r") as tar:
        for member in tar.getmembers():
            if member.uid != identity.uid or member.gid != identity.gid:
                violations.append(
                    f"{member.name}: owned by {member.uid}:{member.gid}, expected {identity.spec}"
                )
    return violations
