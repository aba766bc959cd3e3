"""Shared test fixtures for layerforge.

External tools (npm, uv, PyInstaller, the frozen binary, tiktoken) are
replaced by ``FakeRunner``; model downloads by ``FakeFetcher``.  Both record
what they were asked to do so tests can assert on it.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from layerforge.config import ForgeSettings
from layerforge.core.artifact_store import ArtifactStore
from layerforge.core.commands import CommandResult
from layerforge.core.resolver import resolve
from layerforge.modelcache.cache import ModelCache
from layerforge.modelcache.fetchers import FetchError
from layerforge.models.cache import ModelKind, ModelRequest, slugify
from layerforge.models.config import BuildConfiguration


# ---------------------------------------------------------------------------
# Fake external tools
# ---------------------------------------------------------------------------


def _flag_value(argv: Sequence[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


def _flag_values(argv: Sequence[str], flag: str) -> list[str]:
    return [argv[i + 1] for i, arg in enumerate(argv[:-1]) if arg == flag]


class FakeRunner:
    """Command runner that simulates the build toolchain on disk.

    Parameters
    ----------
    gpu_leak:
        Make the requirements install pull GPU-only distributions.
    fail_tool:
        Tool name (``npm``, ``uv``, ``pyinstaller``) that exits non-zero.
    """

    def __init__(self, *, gpu_leak: bool = False, fail_tool: str = "") -> None:
        self.gpu_leak = gpu_leak
        self.fail_tool = fail_tool
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self._lock = threading.Lock()

    def tools(self) -> list[str]:
        return [Path(argv[0]).name for argv in self.calls]

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        with self._lock:
            self.calls.append(argv)
            self.envs.append(dict(env))
        tool = Path(argv[0]).name
        if tool == self.fail_tool:
            return CommandResult(args=argv, returncode=1, stderr=f"{tool}: simulated failure")

        if tool == "npm":
            return self._npm(argv, Path(cwd))
        if tool == "uv" or argv[1:3] == ["-m", "pip"]:
            return self._install(argv)
        if tool == "pyinstaller":
            return self._pyinstaller(argv)
        if tool == "backend_app":
            return self._smoke(argv)
        if len(argv) > 2 and argv[1] == "-c":
            return self._tiktoken(argv, env)
        return CommandResult(args=argv, returncode=0)

    @staticmethod
    def _npm(argv: list[str], cwd: Path) -> CommandResult:
        if argv[1] in ("ci", "install"):
            (cwd / "node_modules" / "svelte").mkdir(parents=True, exist_ok=True)
            (cwd / "node_modules" / "svelte" / "package.json").write_text("{}")
        elif argv[1:3] == ["run", "build"]:
            assets = cwd / "build" / "_app"
            assets.mkdir(parents=True, exist_ok=True)
            (cwd / "build" / "index.html").write_text("<html><body>app</body></html>")
            (assets / "app.js").write_text("console.log('app');")
        return CommandResult(args=argv, returncode=0, stdout="npm ok")

    def _install(self, argv: list[str]) -> CommandResult:
        target = Path(_flag_value(argv, "--target"))
        target.mkdir(parents=True, exist_ok=True)

        def dist(name: str, version: str) -> None:
            (target / f"{name}-{version}.dist-info").mkdir(exist_ok=True)

        if "-r" in argv:
            dist("fastapi", "0.115.0")
            dist("certifi", "2024.8.30")
            (target / "certifi").mkdir(exist_ok=True)
            (target / "certifi" / "cacert.pem").write_text("-----BEGIN CERTIFICATE-----\n")
            (target / "fastapi").mkdir(exist_ok=True)
            (target / "fastapi" / "__init__.py").write_text("")
            (target / "fastapi" / "__pycache__").mkdir(exist_ok=True)
            (target / "fastapi" / "__pycache__" / "x.pyc").write_bytes(b"\0")
            if self.gpu_leak:
                dist("nvidia_cublas_cu12", "12.4.5.8")
        else:
            index = _flag_value(argv, "--index-url")
            local = index.rstrip("/").rsplit("/", 1)[-1]
            for package in ("torch", "torchvision", "torchaudio"):
                if package in argv:
                    dist(package, f"2.5.1+{local}")
        return CommandResult(args=argv, returncode=0, stdout="installed")

    @staticmethod
    def _pyinstaller(argv: list[str]) -> CommandResult:
        dist = Path(_flag_value(argv, "--distpath"))
        dist.mkdir(parents=True, exist_ok=True)
        binary = dist / _flag_value(argv, "--name")
        hidden = _flag_values(argv, "--hidden-import")
        binary.write_text("#!/bin/sh\n# hidden-imports: " + ",".join(hidden) + "\n")
        binary.chmod(0o755)
        return CommandResult(args=argv, returncode=0, stdout="Building EXE completed successfully.")

    @staticmethod
    def _smoke(argv: list[str]) -> CommandResult:
        bundled = Path(argv[0]).read_text().split("hidden-imports: ", 1)[1].split(",")
        bundled = [name.strip() for name in bundled]
        for module in ("torch", "sentence_transformers", "faster_whisper", "tiktoken"):
            if module not in bundled:
                return CommandResult(
                    args=argv,
                    returncode=1,
                    stderr=(
                        "Traceback (most recent call last):\n"
                        '  File "main.py", line 3, in <module>\n'
                        f"ModuleNotFoundError: No module named '{module}'\n"
                    ),
                )
        return CommandResult(args=argv, returncode=0, stdout="usage: backend_app [--help]")

    @staticmethod
    def _tiktoken(argv: list[str], env: Mapping[str, str]) -> CommandResult:
        cache_dir = Path(env["TIKTOKEN_CACHE_DIR"])
        cache_dir.mkdir(parents=True, exist_ok=True)
        (cache_dir / "9b5ad71b2ce5302211f9c61530b329a4922fc6a4").write_bytes(
            f"{argv[-1]} ranks".encode()
        )
        return CommandResult(args=argv, returncode=0)


class FakeFetcher:
    """Model fetcher writing a Hub-shaped snapshot without any network.

    Parameters
    ----------
    fail:
        Identifiers whose fetch always raises ``FetchError``.
    corrupt:
        Identifiers whose fetch completes but leaves no weights.
    flaky:
        Identifier -> number of failing attempts before success.
    """

    def __init__(
        self,
        *,
        fail: Sequence[str] = (),
        corrupt: Sequence[str] = (),
        flaky: Mapping[str, int] | None = None,
    ) -> None:
        self.fail = set(fail)
        self.corrupt = set(corrupt)
        self.flaky = dict(flaky or {})
        self.calls: list[str] = []

    def fetch(self, request: ModelRequest, dest: Path) -> None:
        self.calls.append(request.identifier)
        if request.identifier in self.fail:
            raise FetchError(f"network unreachable for {request.identifier}")
        if self.flaky.get(request.identifier, 0) > 0:
            self.flaky[request.identifier] -= 1
            raise FetchError("connection reset by peer")
        snapshot = dest / f"models--{slugify(request.identifier)}" / "snapshots" / "main"
        snapshot.mkdir(parents=True, exist_ok=True)
        (snapshot / "config.json").write_text(json.dumps({"id": request.identifier}))
        if request.identifier not in self.corrupt:
            (snapshot / "model.safetensors").write_bytes(request.identifier.encode() * 16)

    def verify(self, request: ModelRequest, dest: Path) -> list[str]:
        if not any(dest.rglob("*.safetensors")):
            return ["no model weights in snapshot"]
        return []


def fake_fetchers(fetcher: FakeFetcher) -> dict[ModelKind, FakeFetcher]:
    return {kind: fetcher for kind in ModelKind}


# ---------------------------------------------------------------------------
# Environment fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def settings(tmp_dir: Path) -> ForgeSettings:
    """Tool settings rooted in the test's temp directory, no backoff."""
    return ForgeSettings(
        work_dir=tmp_dir / "work",
        artifact_dir=tmp_dir / "artifacts",
        model_cache_dir=tmp_dir / "model-cache",
        output_dir=tmp_dir / "dist",
        max_parallel_stages=3,
        stage_timeout_seconds=60.0,
        fetch_retries=3,
        fetch_backoff_seconds=0.0,
        fetch_backoff_max_seconds=0.0,
        installer="uv",
        python_executable="python3",
        npm_executable="npm",
        pyinstaller_executable="pyinstaller",
        smoke_test_timeout_seconds=30.0,
        export_archive=False,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ArtifactStore:
    """Provide a fresh ArtifactStore in a temp directory."""
    return ArtifactStore(tmp_dir / "artifacts")


@pytest.fixture
def model_cache(tmp_dir: Path) -> ModelCache:
    """Provide an empty model cache in a temp directory."""
    return ModelCache(tmp_dir / "model-cache")


@pytest.fixture
def runtime_ids() -> tuple[int, int]:
    """A uid/gid this process can hand files to.

    Root can chown to anything, so a conventional 1000:1000 is used; an
    unprivileged process uses its own ids.
    """
    if os.geteuid() == 0:
        return 1000, 1000
    if os.getegid() == 0:
        pytest.skip("process runs with the privileged group")
    return os.geteuid(), os.getegid()


@pytest.fixture
def make_config(runtime_ids: tuple[int, int]) -> Callable[..., BuildConfiguration]:
    """Factory fixture: resolve the built-in matrix with test identity ids."""

    def _factory(profile: str | None = None, **overrides: Any) -> BuildConfiguration:
        uid, gid = runtime_ids
        values: dict[str, Any] = {"uid": uid, "gid": gid, "build_hash": "test-build"}
        values.update(overrides)
        return resolve(overrides=values, profile=profile)

    return _factory


# ---------------------------------------------------------------------------
# Sample projects
# ---------------------------------------------------------------------------


@pytest.fixture
def frontend_dir(tmp_dir: Path) -> Path:
    """A minimal web client project."""
    root = tmp_dir / "frontend"
    (root / "src").mkdir(parents=True)
    (root / "package.json").write_text(json.dumps({"name": "webui", "version": "0.5.0"}))
    (root / "package-lock.json").write_text("{}")
    (root / "CHANGELOG.md").write_text("# Changelog\n\n## 0.5.0\n- first\n")
    (root / "src" / "App.svelte").write_text("<h1>hello</h1>")
    (root / ".npmrc").write_text("//registry.npmjs.org/:_authToken=secret\n")
    return root


@pytest.fixture
def backend_dir(tmp_dir: Path) -> Path:
    """A minimal backend source tree with build-only files mixed in."""
    root = tmp_dir / "backend"
    (root / "open_webui").mkdir(parents=True)
    (root / "migrations").mkdir()
    (root / ".git").mkdir()
    (root / "requirements.txt").write_text("fastapi==0.115.0\nsentence-transformers\n")
    (root / "start.sh").write_text("#!/bin/sh\nexec uvicorn open_webui.main:app\n")
    (root / "main.py").write_text("import open_webui\n")
    (root / "open_webui" / "__init__.py").write_text("")
    (root / "migrations" / "001_init.sql").write_text("create table t (id int);\n")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / ".env").write_text("WEBUI_SECRET_KEY=do-not-ship\n")
    return root


@pytest.fixture
def make_runner() -> type[FakeRunner]:
    """The fake runner class, for tests that need a non-default toolchain."""
    return FakeRunner


@pytest.fixture
def make_fetcher() -> type[FakeFetcher]:
    """The fake fetcher class, for tests that inject fetch failures."""
    return FakeFetcher
