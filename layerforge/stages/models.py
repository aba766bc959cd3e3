"""Model prefetch stage.

Resolves every model the runtime loads at startup against the shared model
cache, fetching only what is missing, and publishes the resolved entries as
this stage's artifact so the assembler and the single-binary packager can
consume them like any other stage output.

Artifact layout::

    {kind}/{slug}@{precision}/...   files of each resolved cache entry
    models.json                     [{kind, identifier, precision, path, digest, ...}]

Files are hard-linked from the cache when it lives on the same filesystem
and copied otherwise.  Cache entries are write-once, so sharing inodes with
them is safe.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

from layerforge.modelcache.cache import FILES, ModelCache
from layerforge.modelcache.fetchers import ModelFetcher, default_fetchers
from layerforge.modelcache.prefetcher import ModelPrefetcher, requests_from_config
from layerforge.models.cache import ModelCacheEntry, ModelKind
from layerforge.models.config import BuildConfiguration
from layerforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

MODELS_INDEX = "models.json"


def _link_or_copy(src: str, dst: str) -> str:
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)
    return dst


def entry_output_path(entry: ModelCacheEntry) -> Path:
    """Relative location of a resolved entry inside the models artifact."""
    return entry.request.relative_path


class ModelPrefetchStage(BaseStage):
    """Materialize embedding, tokenizer, speech and reranking models."""

    name: ClassVar[str] = "models"
    display_name: ClassVar[str] = "Model Prefetch"
    version: ClassVar[str] = "1"
    params: ClassVar[tuple[str, ...]] = (
        "embedding_model",
        "tiktoken_encoding",
        "whisper_model",
        "reranking_model",
    )

    def __init__(
        self,
        cache: ModelCache,
        fetchers: Mapping[ModelKind, ModelFetcher] | None = None,
    ) -> None:
        self.cache = cache
        self.fetchers = dict(fetchers) if fetchers is not None else None

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        fetchers = self.fetchers or default_fetchers(
            python=ctx.settings.python_executable, runner=ctx.runner
        )
        prefetcher = ModelPrefetcher(
            self.cache,
            fetchers,
            retries=ctx.settings.fetch_retries,
            backoff=ctx.settings.fetch_backoff_seconds,
            backoff_max=ctx.settings.fetch_backoff_max_seconds,
            checkpoint=ctx.checkpoint,
        )
        requests = requests_from_config(BuildConfiguration(values=ctx.params()))
        entries = prefetcher.prefetch(requests)

        index: list[dict[str, Any]] = []
        for entry in entries:
            ctx.checkpoint()
            rel = entry_output_path(entry)
            shutil.copytree(
                entry.path / FILES,
                ctx.output / rel,
                symlinks=True,
                copy_function=_link_or_copy,
            )
            index.append({
                "kind": entry.request.kind.value,
                "identifier": entry.request.identifier,
                "precision": entry.request.resolved_precision,
                "device": entry.request.device,
                "path": rel.as_posix(),
                "digest": entry.digest,
                "file_count": entry.file_count,
                "total_bytes": entry.total_bytes,
            })

        (ctx.output / MODELS_INDEX).write_text(json.dumps(index, indent=2), encoding="utf-8")
        fetched = sum(1 for e in entries if not e.reused)
        logger.info(
            "Models ready: %d entr%s (%d fetched, %d reused)",
            len(entries),
            "y" if len(entries) == 1 else "ies",
            fetched,
            len(entries) - fetched,
        )
        return {"models": len(entries), "fetched": fetched}


def read_models_index(artifact_path: Path) -> list[dict[str, Any]]:
    """Load ``models.json`` from a committed models artifact."""
    return json.loads((artifact_path / MODELS_INDEX).read_text(encoding="utf-8"))
