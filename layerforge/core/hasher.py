"""Canonical hashing helpers for cache keys and content integrity.

Stage cache keys and artifact fingerprints are SHA-256 digests of canonical
JSON, so identical inputs always produce identical keys across processes
and machines.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

_CHUNK = 1024 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact, ASCII, UTF-8."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def file_sha256(path: Path) -> str:
    """Stream a file through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def iter_tree_files(root: Path, ignore: frozenset[str] = frozenset()) -> list[Path]:
    """Return every regular file and symlink under *root*, sorted, relative.

    Any file or directory whose name is in *ignore* is skipped entirely.
    """
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in ignore)
        base = Path(dirpath)
        for name in sorted(filenames):
            if name not in ignore:
                found.append((base / name).relative_to(root))
        for name in dirnames:
            candidate = base / name
            if candidate.is_symlink():
                found.append(candidate.relative_to(root))
    return sorted(found)


def tree_manifest(
    root: Path, ignore: frozenset[str] = frozenset()
) -> dict[str, dict[str, Any]]:
    """Map each relative file path under *root* to its size and SHA-256.

    Symlinks are recorded by target rather than followed.
    """
    manifest: dict[str, dict[str, Any]] = {}
    for rel in iter_tree_files(root, ignore):
        path = root / rel
        if path.is_symlink():
            manifest[rel.as_posix()] = {"symlink": os.readlink(path)}
        else:
            manifest[rel.as_posix()] = {
                "size": path.stat().st_size,
                "sha256": file_sha256(path),
            }
    return manifest


def tree_digest(root: Path, ignore: frozenset[str] = frozenset()) -> str:
    """SHA-256 of a directory tree's manifest (paths, sizes, contents)."""
    return sha256_hex(canonical_json_bytes(tree_manifest(root, ignore)))


def path_digest(path: Path, ignore: frozenset[str] = frozenset()) -> str:
    """Digest a file or directory; missing paths digest to ``"absent"``."""
    if not path.exists():
        return "absent"
    if path.is_dir():
        return tree_digest(path, ignore)
    return file_sha256(path)


def compute_stage_key(
    stage_name: str,
    stage_version: str,
    params: dict[str, Any],
    input_fingerprints: dict[str, str],
    source_digests: dict[str, str] | None = None,
) -> str:
    """Cache key for one stage execution.

    Covers everything that can change the stage's output: its name and
    implementation version, the configuration subset it declared, the
    fingerprints of the artifacts it consumes, and digests of any source
    files it reads from outside the pipeline.
    """
    payload = {
        "stage": stage_name,
        "version": stage_version,
        "params": params,
        "inputs": input_fingerprints,
        "sources": source_digests or {},
    }
    return sha256_hex(canonical_json_bytes(payload))
