"""layerforge data models: all Pydantic v2, all frozen (immutable)."""

from layerforge.models.artifacts import Artifact
from layerforge.models.cache import (
    DEFAULT_PRECISION,
    PREFETCH_ORDER,
    ModelCacheEntry,
    ModelKind,
    ModelRequest,
)
from layerforge.models.config import (
    DISABLED,
    BuildConfiguration,
    ParameterSpec,
    VariantMatrix,
)
from layerforge.models.dependencies import DependencySet
from layerforge.models.identity import RuntimeIdentity
from layerforge.models.reports import BuildReport
from layerforge.models.stages import (
    DONE_STATES,
    VALID_TRANSITIONS,
    StageRecord,
    StageState,
)

__all__ = [
    # config
    "DISABLED",
    "ParameterSpec",
    "VariantMatrix",
    "BuildConfiguration",
    # stages
    "StageState",
    "StageRecord",
    "DONE_STATES",
    "VALID_TRANSITIONS",
    # artifacts
    "Artifact",
    # model cache
    "ModelKind",
    "ModelRequest",
    "ModelCacheEntry",
    "PREFETCH_ORDER",
    "DEFAULT_PRECISION",
    # identity
    "RuntimeIdentity",
    # dependencies
    "DependencySet",
    # reports
    "BuildReport",
]
