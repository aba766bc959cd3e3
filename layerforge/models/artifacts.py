"""Stage artifact models (immutable once committed)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """An immutable filesystem subtree produced by exactly one stage.

    Identified by ``(stage, fingerprint)``; the fingerprint is the stage's
    cache key, suffixed with the build id for uncacheable stages.  ``path`` points at the committed tree.  Consumers read from
    it or copy out of it and never write into it.
    """

    model_config = ConfigDict(frozen=True)

    stage: str
    fingerprint: str
    path: Path
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    metadata: dict[str, Any] = {}

    @property
    def ref(self) -> str:
        return f"{self.stage}@{self.fingerprint[:12]}"
