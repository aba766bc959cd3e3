"""Backend dependency-set selection model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class DependencySet(BaseModel):
    """Which backend dependency sets a configuration selects.

    Produced by ``layerforge.core.dependencies.select_dependency_set`` and
    consumed by the backend environment stage.  Holds no resolution results,
    only the selection.
    """

    model_config = ConfigDict(frozen=True)

    accelerator: str  # "cpu" or a CUDA wheel tag such as "cu128"
    accelerator_packages: list[str]
    accelerator_index_url: str
    forbidden_distributions: list[str] = []
    forbidden_local_versions: list[str] = []
    system_packages: list[str] = []
    python_version: str = ""  # interpreter the runtime base provides, if any
    bundled_runtime: str = ""

    @property
    def cpu_only(self) -> bool:
        return self.accelerator == "cpu"
