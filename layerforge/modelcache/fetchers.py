"""Model fetch backends.

A ``ModelFetcher`` materializes one ``ModelRequest`` into a directory and
checks that what it wrote is usable.  Fetch failures are raised as
``OSError`` subclasses so the prefetcher's bounded retry applies to network
errors and integrity failures alike.

Default backends:

- ``HubSnapshotFetcher`` - Hugging Face Hub repositories (embedding,
  reranking and speech models), downloaded in the Hub cache layout the
  runtime libraries read from, CPU-friendly weight formats only.
- ``TiktokenFetcher`` - tokenizer encodings, materialized by tiktoken itself
  in a subprocess so its cache directory is set per fetch instead of via
  this process's environment.
"""

from __future__ import annotations

import fnmatch
import logging
import sys
from pathlib import Path
from typing import Protocol, runtime_checkable

from huggingface_hub import HfApi, snapshot_download

from layerforge.core.commands import CommandRunner, SubprocessRunner, curated_environment
from layerforge.models.cache import ModelKind, ModelRequest

logger = logging.getLogger(__name__)


class FetchError(OSError):
    """A fetch attempt failed; worth retrying."""


class FetchIntegrityError(FetchError):
    """A fetch completed but its output is incomplete or unusable."""


@runtime_checkable
class ModelFetcher(Protocol):
    """Protocol for model fetch backends."""

    def fetch(self, request: ModelRequest, dest: Path) -> None:
        """Materialize *request* into the empty directory *dest*."""
        ...

    def verify(self, request: ModelRequest, dest: Path) -> list[str]:
        """Return integrity problems with a fetched *dest*; empty if usable."""
        ...


# ---------------------------------------------------------------------------
# Hugging Face Hub
# ---------------------------------------------------------------------------

# faster-whisper size aliases and the CTranslate2 repositories behind them.
WHISPER_REPOS: dict[str, str] = {
    "tiny": "Systran/faster-whisper-tiny",
    "tiny.en": "Systran/faster-whisper-tiny.en",
    "base": "Systran/faster-whisper-base",
    "base.en": "Systran/faster-whisper-base.en",
    "small": "Systran/faster-whisper-small",
    "small.en": "Systran/faster-whisper-small.en",
    "medium": "Systran/faster-whisper-medium",
    "medium.en": "Systran/faster-whisper-medium.en",
    "large-v2": "Systran/faster-whisper-large-v2",
    "large-v3": "Systran/faster-whisper-large-v3",
    "distil-large-v3": "Systran/faster-distil-whisper-large-v3",
}

# Weight formats never loaded on a CPU torch runtime.
NON_TORCH_FORMATS: list[str] = [
    "*.h5", "*.msgpack", "*.ot", "*.tflite", "onnx/*", "openvino/*", "*.onnx", "coreml/*",
]
# Duplicate torch weights skipped when safetensors are available.
LEGACY_TORCH_FORMATS: list[str] = ["*.bin", "*.pt", "*.pth"]

# Files the faster-whisper runtime needs from a CTranslate2 repository.
WHISPER_FILES: list[str] = ["config.json", "preprocessor_config.json", "model.bin", "tokenizer.json", "vocabulary.*"]


def hub_repo_id(request: ModelRequest) -> str:
    """Map a configured identifier to a Hub repository id."""
    identifier = request.identifier.strip()
    if request.kind is ModelKind.SPEECH:
        return WHISPER_REPOS.get(identifier, identifier)
    if "/" not in identifier:
        # sentence-transformers resolves bare names under its own org.
        return f"sentence-transformers/{identifier}"
    return identifier


def hub_cache_dir(request: ModelRequest, dest: Path) -> Path:
    """Where the Hub cache lives inside a fetched entry.

    Embedding and reranking libraries read ``$HF_HOME/hub``; faster-whisper
    reads its ``download_root`` directly.
    """
    return dest if request.kind is ModelKind.SPEECH else dest / "hub"


class HubSnapshotFetcher:
    """Fetch repositories from the Hugging Face Hub with ``snapshot_download``.

    Parameters
    ----------
    revision:
        Optional pinned revision (branch, tag, or commit) for every fetch.
    token:
        Optional access token for gated repositories.  Used for the request
        only; it is never written into the cache.
    """

    def __init__(self, *, revision: str | None = None, token: str | None = None) -> None:
        self.revision = revision
        self.token = token

    def _patterns(self, repo_id: str, request: ModelRequest) -> tuple[list[str] | None, list[str]]:
        if request.kind is ModelKind.SPEECH:
            return list(WHISPER_FILES), []

        files = HfApi().list_repo_files(repo_id, revision=self.revision, token=self.token)
        ignore = list(NON_TORCH_FORMATS)
        if any(f.endswith(".safetensors") for f in files):
            ignore += LEGACY_TORCH_FORMATS
        return None, ignore

    def fetch(self, request: ModelRequest, dest: Path) -> None:
        repo_id = hub_repo_id(request)
        allow, ignore = self._patterns(repo_id, request)
        logger.info("Downloading %s (%s) from the Hub", repo_id, request.resolved_precision)
        snapshot_download(
            repo_id=repo_id,
            revision=self.revision,
            cache_dir=str(hub_cache_dir(request, dest)),
            allow_patterns=allow,
            ignore_patterns=ignore or None,
            token=self.token,
        )

    def verify(self, request: ModelRequest, dest: Path) -> list[str]:
        root = hub_cache_dir(request, dest)
        snapshots = [p for p in root.glob("models--*/snapshots/*") if p.is_dir()]
        if not snapshots:
            return [f"no snapshot for {hub_repo_id(request)}"]
        names = [p.name for snap in snapshots for p in snap.rglob("*") if p.is_file() or p.is_symlink()]
        if request.kind is ModelKind.SPEECH:
            required = ["model.bin", "config.json"]
            return [f"missing {name}" for name in required if name not in names]
        weights = ("*.safetensors", "*.bin", "*.pt", "*.pth")
        if not any(fnmatch.fnmatchcase(n, w) for n in names for w in weights):
            return ["no model weights in snapshot"]
        return []


# ---------------------------------------------------------------------------
# tiktoken
# ---------------------------------------------------------------------------

_TIKTOKEN_SCRIPT = "import sys, tiktoken; tiktoken.get_encoding(sys.argv[1])"


class TiktokenFetcher:
    """Materialize a tiktoken encoding into a ``TIKTOKEN_CACHE_DIR``.

    Parameters
    ----------
    python:
        Interpreter with tiktoken installed.
    runner:
        Command runner; defaults to a subprocess runner.
    timeout:
        Seconds one fetch may take.
    """

    def __init__(
        self,
        *,
        python: str = sys.executable,
        runner: CommandRunner | None = None,
        timeout: float = 300.0,
    ) -> None:
        self.python = python
        self.runner = runner or SubprocessRunner()
        self.timeout = timeout

    def fetch(self, request: ModelRequest, dest: Path) -> None:
        env = curated_environment(dest.parent, {"TIKTOKEN_CACHE_DIR": str(dest)})
        result = self.runner.run(
            [self.python, "-c", _TIKTOKEN_SCRIPT, request.identifier],
            cwd=dest.parent,
            env=env,
            timeout=self.timeout,
        )
        if not result.ok:
            raise FetchError(
                f"tiktoken could not load {request.identifier!r}: "
                f"{result.diagnostics(500) or 'no output'}"
            )

    def verify(self, request: ModelRequest, dest: Path) -> list[str]:
        blobs = [p for p in dest.iterdir() if p.is_file() and not p.name.endswith(".tmp")] if dest.is_dir() else []
        if not blobs:
            return [f"encoding {request.identifier!r} left no cache file"]
        if any(p.stat().st_size == 0 for p in blobs):
            return ["empty encoding file"]
        return []


def default_fetchers(
    *,
    python: str = sys.executable,
    revision: str | None = None,
    token: str | None = None,
    runner: CommandRunner | None = None,
) -> dict[ModelKind, ModelFetcher]:
    """The fetch backend for each model kind."""
    hub = HubSnapshotFetcher(revision=revision, token=token)
    return {
        ModelKind.EMBEDDING: hub,
        ModelKind.RERANKING: hub,
        ModelKind.SPEECH: hub,
        ModelKind.TOKENIZER: TiktokenFetcher(python=python, runner=runner),
    }
