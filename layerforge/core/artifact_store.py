"""Fingerprint-keyed, immutable stage artifact store.

Storage layout::

    {base}/{stage}/{fingerprint}/artifact.json        <- completion marker
    {base}/{stage}/{fingerprint}/tree/...             <- the artifact subtree
    {base}/.staging/{build_id}/owner.json             <- owning process
    {base}/.staging/{build_id}/{stage}-{uuid}/        <- in-progress outputs

A stage writes into a private staging directory under its build's staging
scope.  ``commit()`` writes the marker into the staging directory and renames
it into place in one step, so an artifact directory either carries a marker
and is complete or does not exist.  Several builds may share one store:
``purge_staging()`` only removes scopes whose owning build is gone.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import socket
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from layerforge.errors import ArtifactIntegrityError
from layerforge.models.artifacts import Artifact

logger = logging.getLogger(__name__)

MARKER = "artifact.json"
TREE = "tree"
OWNER = "owner.json"
_STAGING = ".staging"
# Scope for staging areas opened outside a build; always purgeable.
_UNOWNED = "_unowned"

# Staging scopes held by builds running in this process.
_active_scopes: set[Path] = set()
_active_guard = threading.Lock()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class Staging:
    """A private, uncommitted output area for one stage execution."""

    def __init__(self, root: Path, stage: str) -> None:
        self.root = root
        self.stage = stage
        self.tree = root / TREE

    def __repr__(self) -> str:
        return f"<Staging stage={self.stage!r} root={str(self.root)!r}>"


class ArtifactStore:
    """Stage artifacts keyed by ``(stage, fingerprint)``.

    Committing the same key twice keeps the first artifact (idempotent).
    There is no update; ``purge_staging`` only touches uncommitted output.

    Parameters
    ----------
    base_path:
        Root directory for artifact storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _artifact_dir(self, stage: str, fingerprint: str) -> Path:
        return self._base / stage / fingerprint

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, stage: str, fingerprint: str) -> Artifact | None:
        """Return the committed artifact for a key, or None."""
        marker = self._artifact_dir(stage, fingerprint) / MARKER
        if not marker.is_file():
            return None
        return self._load(marker)

    def exists(self, stage: str, fingerprint: str) -> bool:
        return (self._artifact_dir(stage, fingerprint) / MARKER).is_file()

    def _load(self, marker: Path) -> Artifact:
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ArtifactIntegrityError(f"Unreadable artifact marker {marker}: {exc}") from exc
        tree = marker.parent / TREE
        if not tree.is_dir():
            raise ArtifactIntegrityError(f"Artifact {marker.parent} has no tree")
        return Artifact(
            stage=data["stage"],
            fingerprint=data["fingerprint"],
            path=tree,
            created_at=datetime.fromisoformat(data["created_at"]),
            metadata=data.get("metadata", {}),
        )

    def list_artifacts(self, stage: str | None = None) -> list[Artifact]:
        """All committed artifacts, optionally for one stage."""
        stage_dirs = [self._base / stage] if stage else sorted(
            p for p in self._base.iterdir() if p.is_dir() and p.name != _STAGING
        )
        found: list[Artifact] = []
        for stage_dir in stage_dirs:
            if not stage_dir.is_dir():
                continue
            for marker in sorted(stage_dir.glob(f"*/{MARKER}")):
                found.append(self._load(marker))
        return found

    # ------------------------------------------------------------------
    # Staging and commit
    # ------------------------------------------------------------------

    @contextmanager
    def build_scope(self, build_id: str) -> Iterator[Path]:
        """Own a staging scope for one build while the block runs.

        The scope is registered as live for this process and stamped with an
        owner file, so concurrent builds on the same store never purge it.
        It is removed, with anything still staged in it, on exit.
        """
        root = self._base / _STAGING / build_id
        root.mkdir(parents=True, exist_ok=True)
        (root / OWNER).write_text(
            json.dumps({
                "build_id": build_id,
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "started_at": datetime.now(timezone.utc).isoformat(),
            }),
            encoding="utf-8",
        )
        key = root.resolve()
        with _active_guard:
            _active_scopes.add(key)
        try:
            yield root
        finally:
            with _active_guard:
                _active_scopes.discard(key)
            shutil.rmtree(root, ignore_errors=True)

    def begin(self, stage: str, build_id: str | None = None) -> Staging:
        """Create a fresh private staging area for *stage*."""
        scope = self._base / _STAGING / (build_id or _UNOWNED)
        root = scope / f"{stage}-{uuid.uuid4().hex[:12]}"
        (root / TREE).mkdir(parents=True)
        return Staging(root, stage)

    def commit(
        self,
        staging: Staging,
        fingerprint: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Artifact:
        """Atomically publish a staging area as the artifact for *fingerprint*.

        If another writer committed the same key first, the staged copy is
        discarded and the existing artifact is returned.
        """
        created_at = datetime.now(timezone.utc)
        marker = {
            "stage": staging.stage,
            "fingerprint": fingerprint,
            "created_at": created_at.isoformat(),
            "metadata": metadata or {},
        }
        (staging.root / MARKER).write_text(
            json.dumps(marker, indent=2, sort_keys=True), encoding="utf-8"
        )

        target = self._artifact_dir(staging.stage, fingerprint)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(staging.root, target)
        except OSError:
            if not self.exists(staging.stage, fingerprint):
                raise
            logger.info(
                "Artifact %s@%s already committed by another writer; discarding copy",
                staging.stage,
                fingerprint[:12],
            )
            self.discard(staging)
            existing = self.lookup(staging.stage, fingerprint)
            assert existing is not None
            return existing

        return Artifact(
            stage=staging.stage,
            fingerprint=fingerprint,
            path=target / TREE,
            created_at=created_at,
            metadata=metadata or {},
        )

    def discard(self, staging: Staging) -> None:
        """Remove an uncommitted staging area."""
        shutil.rmtree(staging.root, ignore_errors=True)

    def _scope_is_live(self, scope: Path) -> bool:
        with _active_guard:
            if scope.resolve() in _active_scopes:
                return True
        try:
            owner = json.loads((scope / OWNER).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        if owner.get("host") != socket.gethostname():
            # Another machine's build on a shared store; its liveness is unknown.
            return True
        pid = int(owner.get("pid", 0))
        if pid <= 0 or pid == os.getpid():
            return False
        return _pid_alive(pid)

    def purge_staging(self) -> int:
        """Remove staging areas left by builds that are no longer running.

        Returns the number of staging areas removed.
        """
        staging_root = self._base / _STAGING
        if not staging_root.is_dir():
            return 0
        purged = 0
        for scope in sorted(p for p in staging_root.iterdir() if p.is_dir()):
            if self._scope_is_live(scope):
                continue
            purged += sum(1 for p in scope.iterdir() if p.is_dir())
            shutil.rmtree(scope, ignore_errors=True)
        if purged:
            logger.info("Purged %d partial artifact(s) from aborted builds", purged)
        return purged
