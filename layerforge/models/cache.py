"""Model cache entry models."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class ModelKind(str, Enum):
    """Kinds of model data the runtime needs pre-fetched."""

    EMBEDDING = "embedding"
    TOKENIZER = "tokenizer"
    SPEECH = "speech"
    RERANKING = "reranking"


# Fetch order within one prefetch pass.
PREFETCH_ORDER: tuple[ModelKind, ...] = (
    ModelKind.EMBEDDING,
    ModelKind.TOKENIZER,
    ModelKind.SPEECH,
    ModelKind.RERANKING,
)

# Storage-efficient CPU precision per kind.
DEFAULT_PRECISION: dict[ModelKind, str] = {
    ModelKind.EMBEDDING: "cpu-safetensors",
    ModelKind.TOKENIZER: "bpe",
    ModelKind.SPEECH: "cpu-int8",
    ModelKind.RERANKING: "cpu-safetensors",
}

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def slugify(identifier: str) -> str:
    """Filesystem-safe, deterministic form of a model identifier."""
    return _SLUG_RE.sub("--", identifier.strip()).strip("-") or "default"


class ModelRequest(BaseModel):
    """One model the runtime needs: ``(kind, identifier, precision)``."""

    model_config = ConfigDict(frozen=True)

    kind: ModelKind
    identifier: str
    precision: str = ""
    device: str = "cpu"

    @property
    def resolved_precision(self) -> str:
        return self.precision or DEFAULT_PRECISION[self.kind]

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind.value, self.identifier, self.resolved_precision)

    @property
    def relative_path(self) -> Path:
        """Deterministic location of this entry inside a cache root."""
        return Path(self.kind.value) / f"{slugify(self.identifier)}@{self.resolved_precision}"

    def describe(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


class ModelCacheEntry(BaseModel):
    """A materialized cache entry on disk."""

    model_config = ConfigDict(frozen=True)

    request: ModelRequest
    path: Path
    file_count: int
    total_bytes: int
    digest: str  # sha256 of the entry manifest
    reused: bool = False
