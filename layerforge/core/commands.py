"""Pluggable command execution for stages.

Stages never call ``subprocess`` directly.  They go through a
``CommandRunner`` so that:

1. every external tool receives an explicit, curated environment instead of
   inheriting the invoking shell's variables;
2. output is captured and attached to ``StageError`` diagnostics;
3. tests can substitute a fake runner and exercise the stages without npm,
   pip, or PyInstaller installed.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Diagnostics attached to errors are truncated to this many characters.
DIAGNOSTIC_TAIL = 4000

# Variables carried from the host into stage environments.  Anything else
# (tokens, registry credentials, proxies with embedded auth) stays out.
HOST_PASSTHROUGH: tuple[str, ...] = ("PATH", "LANG", "LC_ALL", "TZ", "SSL_CERT_FILE")


class CommandResult(BaseModel):
    """Captured outcome of one external command."""

    model_config = ConfigDict(frozen=True)

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def diagnostics(self, limit: int = DIAGNOSTIC_TAIL) -> str:
        """Tail of combined output for error reports."""
        combined = "\n".join(part for part in (self.stdout, self.stderr) if part)
        return combined[-limit:]


@runtime_checkable
class CommandRunner(Protocol):
    """Protocol for command execution backends."""

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *args* in *cwd* with exactly *env* and capture the output."""
        ...


class SubprocessRunner:
    """Default runner backed by ``subprocess.run``."""

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug("exec %s (cwd=%s)", " ".join(argv), cwd)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=dict(env),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                args=argv,
                returncode=-1,
                stdout=_decode(exc.stdout),
                stderr=_decode(exc.stderr),
                timed_out=True,
            )
        except FileNotFoundError as exc:
            return CommandResult(args=argv, returncode=127, stderr=str(exc))
        return CommandResult(
            args=argv,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def curated_environment(
    home: Path,
    extra: Mapping[str, str] | None = None,
    *,
    host: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build an isolated process environment for a stage.

    Only ``HOST_PASSTHROUGH`` variables are copied from the host; ``HOME``
    and ``TMPDIR`` point into the stage workspace so tool caches and
    temporary files stay inside it.
    """
    source = os.environ if host is None else host
    env = {key: source[key] for key in HOST_PASSTHROUGH if key in source}
    env.setdefault("PATH", os.defpath)
    env["HOME"] = str(home)
    env["TMPDIR"] = str(home)
    env.update(extra or {})
    return env
