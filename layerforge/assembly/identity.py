"""Runtime identity: account entries and ownership capability."""

from __future__ import annotations

import os

from layerforge.errors import ConfigurationError
from layerforge.models.config import BuildConfiguration
from layerforge.models.identity import RuntimeIdentity


def identity_from_config(config: BuildConfiguration) -> RuntimeIdentity:
    """Build the runtime identity from the resolved ``uid``/``gid``."""
    try:
        return RuntimeIdentity(uid=int(config["uid"]), gid=int(config["gid"]))
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(f"Invalid runtime identity: {exc}") from exc


def passwd_entry(identity: RuntimeIdentity) -> str:
    return (
        f"{identity.user}:x:{identity.uid}:{identity.gid}:"
        f"{identity.user}:{identity.home}:{identity.shell}"
    )


def group_entry(identity: RuntimeIdentity) -> str:
    return f"{identity.group}:x:{identity.gid}:"


def account_files(identity: RuntimeIdentity) -> dict[str, str]:
    """Minimal ``etc/passwd`` and ``etc/group`` for the runtime identity."""
    return {
        "passwd": "\n".join([
            "root:x:0:0:root:/root:/usr/sbin/nologin",
            passwd_entry(identity),
            "",
        ]),
        "group": "\n".join([
            "root:x:0:",
            group_entry(identity),
            "",
        ]),
    }


def can_apply_ownership(identity: RuntimeIdentity) -> bool:
    """Whether this process may ``lchown`` files to *identity*.

    Root may chown to anything; an unprivileged builder only to its own uid
    and one of its groups.
    """
    if os.geteuid() == 0:
        return True
    return identity.uid == os.geteuid() and (
        identity.gid == os.getegid() or identity.gid in os.getgroups()
    )
