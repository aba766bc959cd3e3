"""Tool configuration: env-driven, read once per invocation.

Centralized settings using pydantic-settings.  Reads from a ``.env`` file
and ``LAYERFORGE_*`` environment variables.  These settings steer *how* the
pipeline runs (paths, parallelism, timeouts, retry policy); the build
parameters that decide *what* gets built live in the variant matrix and are
resolved by ``layerforge.core.resolver``.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Build parameters may be supplied as LAYERFORGE_PARAM_<NAME>=value.
PARAM_ENV_PREFIX = "LAYERFORGE_PARAM_"


class ForgeSettings(BaseSettings):
    """Tool settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LAYERFORGE_LOG_LEVEL=DEBUG
        export LAYERFORGE_MAX_PARALLEL_STAGES=2
        export LAYERFORGE_MODEL_CACHE_DIR=/var/cache/layerforge/models

    Or via .env file::

        LAYERFORGE_FETCH_RETRIES=5
        LAYERFORGE_INSTALLER=pip
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYERFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Storage paths
    work_dir: Path = Path(".layerforge/work")
    artifact_dir: Path = Path(".layerforge/artifacts")
    model_cache_dir: Path = Path(".layerforge/models")
    output_dir: Path = Path("dist")

    # Scheduling
    max_parallel_stages: int = 3
    stage_timeout_seconds: float = 3600.0

    # Resource fetch retry policy (model downloads)
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 2.0
    fetch_backoff_max_seconds: float = 30.0
    cache_verify: Literal["size", "sha256"] = "size"

    # Toolchains
    installer: Literal["uv", "pip"] = "uv"
    python_executable: str = sys.executable
    npm_executable: str = "npm"
    pyinstaller_executable: str = "pyinstaller"
    smoke_test_timeout_seconds: float = 120.0

    # Output
    export_archive: bool = False

    def build_params_from_env(self) -> dict[str, str]:
        """Collect ``LAYERFORGE_PARAM_*`` variables as raw parameter overrides."""
        return {
            key[len(PARAM_ENV_PREFIX):].lower(): value
            for key, value in sorted(os.environ.items())
            if key.startswith(PARAM_ENV_PREFIX)
        }
