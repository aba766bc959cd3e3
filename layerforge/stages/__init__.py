"""layerforge pipeline stages: registry mapping stage name to stage class.

Usage::

    from layerforge.stages import STAGE_REGISTRY, build_pipeline

    stages = build_pipeline(
        config,
        frontend_dir=Path("frontend"),
        backend_dir=Path("backend"),
        model_cache=ModelCache(settings.model_cache_dir),
    )

The pipeline shape follows ``backend_flavor``:

    environment:    frontend, backend-env, models -> assemble
    single-binary:  frontend, backend-env, models -> binary -> assemble
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

from layerforge.errors import ConfigurationError
from layerforge.modelcache.cache import ModelCache
from layerforge.modelcache.fetchers import ModelFetcher
from layerforge.models.cache import ModelKind
from layerforge.models.config import BuildConfiguration
from layerforge.stages.assemble import ArtifactAssemblerStage
from layerforge.stages.backend import BackendEnvironmentStage
from layerforge.stages.base import BaseStage, StageContext
from layerforge.stages.binary import DEFAULT_HIDDEN_IMPORTS, SingleBinaryStage
from layerforge.stages.frontend import FrontendAssetStage
from layerforge.stages.models import ModelPrefetchStage

# ---------------------------------------------------------------------------
# Stage registry: stage name -> stage class
# ---------------------------------------------------------------------------

STAGE_REGISTRY: dict[str, type[BaseStage]] = {
    "frontend": FrontendAssetStage,
    "backend-env": BackendEnvironmentStage,
    "models": ModelPrefetchStage,
    "binary": SingleBinaryStage,
    "assemble": ArtifactAssemblerStage,
}

# Stages per backend flavor, in declaration order.
FLAVOR_STAGES: dict[str, list[str]] = {
    "environment": ["frontend", "backend-env", "models", "assemble"],
    "single-binary": ["frontend", "backend-env", "models", "binary", "assemble"],
}


def build_pipeline(
    config: BuildConfiguration,
    *,
    frontend_dir: Path,
    backend_dir: Path,
    model_cache: ModelCache,
    fetchers: Mapping[ModelKind, ModelFetcher] | None = None,
    requirements: Path | None = None,
    backend_entry: str = "start.sh",
    entry_script: str = "main.py",
    hidden_imports: Sequence[str] = DEFAULT_HIDDEN_IMPORTS,
) -> list[BaseStage]:
    """Instantiate the stages for *config*'s backend flavor.

    Parameters
    ----------
    config:
        Resolved build configuration; ``backend_flavor`` picks the shape.
    frontend_dir:
        Frontend project (must contain ``package.json``).
    backend_dir:
        Backend source tree.
    model_cache:
        Shared model cache the prefetch stage resolves against.
    fetchers:
        Fetch backends per model kind; defaults to Hub + tiktoken.
    requirements:
        Backend dependency manifest; defaults to ``backend_dir/requirements.txt``.
    backend_entry:
        Startup script inside the backend (environment flavor).
    entry_script:
        Script frozen by PyInstaller (single-binary flavor).
    hidden_imports:
        Dynamically loaded packages the single binary must bundle.
    """
    flavor = str(config.get("backend_flavor", "environment"))
    if flavor not in FLAVOR_STAGES:
        raise ConfigurationError(f"Unknown backend flavor {flavor!r}. Known: {sorted(FLAVOR_STAGES)}")

    backend_dir = Path(backend_dir)
    instances: dict[str, BaseStage] = {
        "frontend": FrontendAssetStage(Path(frontend_dir)),
        "backend-env": BackendEnvironmentStage(requirements or backend_dir / "requirements.txt"),
        "models": ModelPrefetchStage(model_cache, fetchers),
        "binary": SingleBinaryStage(
            backend_dir, entry_script=entry_script, hidden_imports=hidden_imports
        ),
        "assemble": ArtifactAssemblerStage(
            backend_dir, backend_flavor=flavor, backend_entry=backend_entry
        ),
    }
    return [instances[name] for name in FLAVOR_STAGES[flavor]]


__all__ = [
    # Base
    "BaseStage",
    "StageContext",
    # Registry
    "STAGE_REGISTRY",
    "FLAVOR_STAGES",
    "build_pipeline",
    # Concrete stages
    "FrontendAssetStage",
    "BackendEnvironmentStage",
    "ModelPrefetchStage",
    "SingleBinaryStage",
    "ArtifactAssemblerStage",
]
