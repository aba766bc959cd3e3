"""Tests for ArtifactStore - atomic commit, idempotence, staging cleanup."""

from __future__ import annotations

import json
import os
import socket

import pytest

from layerforge.core.artifact_store import MARKER, OWNER, ArtifactStore
from layerforge.core.hasher import canonical_json_bytes, compute_stage_key, content_address, tree_digest
from layerforge.errors import ArtifactIntegrityError


class TestArtifactStore:
    def test_commit_and_lookup(self, artifact_store: ArtifactStore):
        staging = artifact_store.begin("frontend")
        (staging.tree / "index.html").write_text("hi")
        artifact = artifact_store.commit(staging, "abc123", metadata={"asset_count": 1})

        found = artifact_store.lookup("frontend", "abc123")
        assert found is not None
        assert found.path == artifact.path
        assert (found.path / "index.html").read_text() == "hi"
        assert found.metadata == {"asset_count": 1}
        assert found.ref == "frontend@abc123"

    def test_uncommitted_staging_is_invisible(self, artifact_store: ArtifactStore):
        staging = artifact_store.begin("models")
        (staging.tree / "partial.bin").write_bytes(b"\0")
        assert artifact_store.lookup("models", "k") is None
        assert artifact_store.list_artifacts() == []

    def test_first_commit_wins(self, artifact_store: ArtifactStore):
        first = artifact_store.begin("a")
        (first.tree / "v").write_text("1")
        artifact_store.commit(first, "key")

        second = artifact_store.begin("a")
        (second.tree / "v").write_text("2")
        artifact = artifact_store.commit(second, "key")

        assert (artifact.path / "v").read_text() == "1"
        assert not second.root.exists()

    def test_directory_without_marker_is_not_an_artifact(self, artifact_store: ArtifactStore):
        (artifact_store.base_path / "a" / "key" / "tree").mkdir(parents=True)
        assert artifact_store.lookup("a", "key") is None

    def test_corrupt_marker(self, artifact_store: ArtifactStore):
        staging = artifact_store.begin("a")
        artifact = artifact_store.commit(staging, "key")
        (artifact.path.parent / MARKER).write_text("{not json")
        with pytest.raises(ArtifactIntegrityError):
            artifact_store.lookup("a", "key")

    def test_purge_staging(self, artifact_store: ArtifactStore):
        artifact_store.begin("a")
        artifact_store.begin("b")
        assert artifact_store.purge_staging() == 2
        assert artifact_store.purge_staging() == 0

    def test_purge_keeps_live_build_scope(self, artifact_store: ArtifactStore):
        with artifact_store.build_scope("lf-live") as scope:
            staging = artifact_store.begin("a", "lf-live")
            assert staging.root.parent == scope
            assert artifact_store.purge_staging() == 0
            assert staging.root.is_dir()
        assert not scope.exists()

    def test_purge_removes_scope_abandoned_by_this_process(self, artifact_store: ArtifactStore):
        scope = artifact_store.base_path / ".staging" / "lf-crashed"
        (scope / "a-0001" / "tree").mkdir(parents=True)
        (scope / OWNER).write_text(
            json.dumps({"pid": os.getpid(), "host": socket.gethostname()})
        )
        assert artifact_store.purge_staging() == 1
        assert not scope.exists()

    def test_purge_keeps_scope_of_another_running_process(self, artifact_store: ArtifactStore):
        scope = artifact_store.base_path / ".staging" / "lf-elsewhere"
        (scope / "a-0001" / "tree").mkdir(parents=True)
        (scope / OWNER).write_text(
            json.dumps({"pid": os.getppid(), "host": socket.gethostname()})
        )
        assert artifact_store.purge_staging() == 0
        assert scope.is_dir()

    def test_marker_content(self, artifact_store: ArtifactStore):
        staging = artifact_store.begin("a")
        artifact = artifact_store.commit(staging, "key")
        marker = json.loads((artifact.path.parent / MARKER).read_text())
        assert marker["stage"] == "a"
        assert marker["fingerprint"] == "key"


class TestHasher:
    def test_canonical_json_is_order_independent(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == canonical_json_bytes({"a": 2, "b": 1})

    def test_content_address_prefix(self):
        assert content_address({"x": 1}).startswith("sha256:")

    def test_stage_key_covers_every_input(self):
        base = compute_stage_key("s", "1", {"p": 1}, {"in": "f"}, {"src": "d"})
        assert base == compute_stage_key("s", "1", {"p": 1}, {"in": "f"}, {"src": "d"})
        assert base != compute_stage_key("s", "2", {"p": 1}, {"in": "f"}, {"src": "d"})
        assert base != compute_stage_key("s", "1", {"p": 2}, {"in": "f"}, {"src": "d"})
        assert base != compute_stage_key("s", "1", {"p": 1}, {"in": "g"}, {"src": "d"})
        assert base != compute_stage_key("s", "1", {"p": 1}, {"in": "f"}, {"src": "e"})

    def test_tree_digest_tracks_content_and_ignores(self, tmp_dir):
        root = tmp_dir / "src"
        root.mkdir()
        (root / "a.py").write_text("x = 1")
        before = tree_digest(root, frozenset({"node_modules"}))
        (root / "node_modules").mkdir()
        (root / "node_modules" / "dep.js").write_text("ignored")
        assert tree_digest(root, frozenset({"node_modules"})) == before
        (root / "a.py").write_text("x = 2")
        assert tree_digest(root, frozenset({"node_modules"})) != before
