"""Build report model written next to the final artifact."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from layerforge.models.stages import StageRecord


class BuildReport(BaseModel):
    """Summary of one build invocation.

    ``configuration`` carries the resolved build parameters.  Secrets are
    never build parameters, so nothing sensitive ends up here.
    """

    model_config = ConfigDict(frozen=True)

    build_id: str
    profile: str = ""
    succeeded: bool
    configuration: dict[str, Any]
    stages: list[StageRecord]
    artifact_path: str = ""
    archive_path: str = ""
    runtime_identity: str = ""
    entrypoint: list[str] = []
    error: str = ""
    failed_stage: str = ""
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None
