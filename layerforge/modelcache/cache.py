"""On-disk model cache keyed by ``(kind, identifier, precision)``.

Storage layout::

    {root}/v1/{kind}/{slug(identifier)}@{precision}/manifest.json
    {root}/v1/{kind}/{slug(identifier)}@{precision}/files/...
    {root}/v1/.staging/{uuid}/                       <- in-progress fetches

The cache lives outside any single build and may be shared between builds.
Entries are written once: a fetch lands in a private staging directory and
is renamed into place together with its manifest.  When two writers race for
the same key the first rename wins and the loser discards its copy, so the
final content of a key never changes once published.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from layerforge.core.hasher import canonical_json_bytes, file_sha256, sha256_hex, tree_manifest
from layerforge.models.cache import ModelCacheEntry, ModelKind, ModelRequest

logger = logging.getLogger(__name__)

LAYOUT_VERSION = "v1"
MANIFEST = "manifest.json"
FILES = "files"

VerifyMode = Literal["size", "sha256"]


class CacheStaging:
    """A private directory a fetcher writes into before commit."""

    def __init__(self, root: Path, request: ModelRequest) -> None:
        self.root = root
        self.request = request
        self.files = root / FILES


class ModelCache:
    """Narrow read/write interface over a shared model cache directory.

    Parameters
    ----------
    root:
        Cache root.  Created if missing.
    verify:
        How reused entries are checked against their manifest: ``"size"``
        compares file sizes, ``"sha256"`` re-hashes every file.
    """

    def __init__(self, root: Path, *, verify: VerifyMode = "size") -> None:
        self._root = Path(root) / LAYOUT_VERSION
        self._root.mkdir(parents=True, exist_ok=True)
        self._verify = verify
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str, str], threading.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def entry_dir(self, request: ModelRequest) -> Path:
        return self._root / request.relative_path

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, request: ModelRequest) -> Iterator[None]:
        """Serialize writers for one key within this process."""
        with self._guard:
            key_lock = self._locks.setdefault(request.key, threading.Lock())
        with key_lock:
            yield

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def lookup(self, request: ModelRequest) -> ModelCacheEntry | None:
        """Return a valid published entry for *request*, or None.

        An entry whose files no longer match its manifest is treated as a
        miss and logged; it is not silently served.
        """
        entry = self.entry_dir(request)
        manifest_path = entry / MANIFEST
        if not manifest_path.is_file():
            return None
        problems = self.verify_entry(entry)
        if problems:
            logger.warning(
                "Cache entry %s failed verification (%s); refetching",
                request.describe(),
                "; ".join(problems[:3]),
            )
            return None
        manifest = self._read_manifest(manifest_path)
        return self._entry(request, entry, manifest, reused=True)

    def verify_entry(self, entry: Path, mode: VerifyMode | None = None) -> list[str]:
        """Compare an entry's files against its manifest; return problems."""
        mode = mode or self._verify
        try:
            manifest = self._read_manifest(entry / MANIFEST)
        except (OSError, ValueError) as exc:
            return [f"unreadable manifest: {exc}"]

        files_root = entry / FILES
        problems: list[str] = []
        for rel, meta in manifest.get("files", {}).items():
            path = files_root / rel
            if "symlink" in meta:
                if not path.is_symlink():
                    problems.append(f"{rel}: missing symlink")
                continue
            if not path.is_file():
                problems.append(f"{rel}: missing")
                continue
            if path.stat().st_size != meta["size"]:
                problems.append(f"{rel}: size mismatch")
            elif mode == "sha256" and file_sha256(path) != meta["sha256"]:
                problems.append(f"{rel}: digest mismatch")
        return problems

    def list_entries(self) -> list[ModelCacheEntry]:
        """Every published entry, without verification."""
        entries: list[ModelCacheEntry] = []
        for manifest_path in sorted(self._root.glob(f"*/*/{MANIFEST}")):
            try:
                manifest = self._read_manifest(manifest_path)
                request = ModelRequest(
                    kind=ModelKind(manifest["kind"]),
                    identifier=manifest["identifier"],
                    precision=manifest["precision"],
                    device=manifest.get("device", "cpu"),
                )
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable cache entry %s: %s", manifest_path.parent, exc)
                continue
            entries.append(self._entry(request, manifest_path.parent, manifest, reused=True))
        return entries

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def staging(self, request: ModelRequest) -> CacheStaging:
        root = self._root / ".staging" / uuid.uuid4().hex
        (root / FILES).mkdir(parents=True)
        return CacheStaging(root, request)

    def discard(self, staging: CacheStaging) -> None:
        shutil.rmtree(staging.root, ignore_errors=True)

    def commit(self, staging: CacheStaging) -> ModelCacheEntry:
        """Publish a completed fetch.  First writer for a key wins."""
        request = staging.request
        manifest: dict[str, Any] = {
            "kind": request.kind.value,
            "identifier": request.identifier,
            "precision": request.resolved_precision,
            "device": request.device,
            "fetched_at": datetime.now(timezone.utc).isoformat(),
            "files": tree_manifest(staging.files),
        }
        (staging.root / MANIFEST).write_text(
            json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8"
        )

        target = self.entry_dir(request)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() and not (target / MANIFEST).is_file():
            # Leftover of an entry that failed verification.
            shutil.rmtree(target)
        elif target.exists() and self.verify_entry(target):
            shutil.rmtree(target)

        try:
            os.rename(staging.root, target)
        except OSError:
            if not (target / MANIFEST).is_file():
                raise
            logger.info("Cache entry %s published by another writer", request.describe())
            self.discard(staging)
            return self._entry(request, target, self._read_manifest(target / MANIFEST), reused=True)

        logger.info("Cached %s -> %s", request.describe(), target)
        return self._entry(request, target, manifest, reused=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_manifest(path: Path) -> dict[str, Any]:
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def _entry(
        request: ModelRequest, path: Path, manifest: dict[str, Any], *, reused: bool
    ) -> ModelCacheEntry:
        files = manifest.get("files", {})
        return ModelCacheEntry(
            request=request,
            path=path,
            file_count=len(files),
            total_bytes=sum(meta.get("size", 0) for meta in files.values()),
            digest=sha256_hex(canonical_json_bytes(files)),
            reused=reused,
        )
