"""Stage state models for the build engine."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageState(str, Enum):
    """Lifecycle state of one stage within a build."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    REUSED = "reused"
    FAILED = "failed"
    CANCELLED = "cancelled"


# States after which a stage's artifact is available to dependents.
DONE_STATES: frozenset[StageState] = frozenset(
    {StageState.COMPLETE, StageState.REUSED}
)

# Valid state transitions, enforced by the engine.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.PENDING: {
        StageState.RUNNING,
        StageState.REUSED,
        StageState.CANCELLED,
        StageState.FAILED,  # sources could not be fingerprinted
    },
    StageState.RUNNING: {StageState.COMPLETE, StageState.FAILED},
    StageState.COMPLETE: set(),
    StageState.REUSED: set(),
    StageState.FAILED: set(),
    StageState.CANCELLED: set(),
}


class StageRecord(BaseModel):
    """Outcome of one stage in a build, as reported to the operator."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    state: StageState
    inputs: list[str] = []
    fingerprint: str = ""
    duration_seconds: float = 0.0
    error: str = ""
