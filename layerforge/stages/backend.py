"""Backend dependency resolver.

Installs the backend's package set into a relocatable ``site-packages``
directory (``--target`` install): no interpreter paths are baked in, so the
tree works from any location once it is on ``PYTHONPATH``.

Accelerator-capable libraries are installed first from the wheel index the
dependency selection chose (CPU-only or a specific CUDA tag); the backend
manifest is then installed against that index as well, so its transitive
requirements resolve to the already-selected builds.  After installation the
package set is checked against the selection and a CPU profile that pulled a
GPU build fails the stage.

Artifact layout::

    site-packages/   relocatable package tree
    packages.json    resolved [{"name", "version"}]
    selection.json   the DependencySet that drove the install
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, ClassVar

from layerforge.core.dependencies import (
    RUNTIME_PYTHON,
    find_forbidden,
    scan_site_packages,
    select_dependency_set,
)
from layerforge.errors import ConfigurationError, StageError
from layerforge.models.config import BuildConfiguration
from layerforge.models.dependencies import DependencySet
from layerforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

PYPI_INDEX = "https://pypi.org/simple"


class BackendEnvironmentStage(BaseStage):
    """Resolve the backend package set into a relocatable environment."""

    name: ClassVar[str] = "backend-env"
    display_name: ClassVar[str] = "Backend Dependencies"
    version: ClassVar[str] = "1"
    params: ClassVar[tuple[str, ...]] = (
        "use_cuda", "cuda_version", "use_ollama", "base_flavor", "backend_flavor",
    )

    def __init__(self, requirements: Path, python_version: str = RUNTIME_PYTHON) -> None:
        self.requirements = Path(requirements)
        self.python_version = python_version

    def sources(self) -> dict[str, Path]:
        return {"requirements": self.requirements}

    def options(self) -> dict[str, Any]:
        return {"python_version": self.python_version}

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    @staticmethod
    def install_command(
        ctx: StageContext,
        target: Path,
        index_url: str,
        extra_index_urls: list[str],
        packages: list[str] | None = None,
        requirements: Path | None = None,
    ) -> list[str]:
        """Build the installer command line for the configured installer."""
        if ctx.settings.installer == "uv":
            cmd = ["uv", "pip", "install", "--python", ctx.settings.python_executable,
                   "--target", str(target), "--no-cache"]
        else:
            cmd = [ctx.settings.python_executable, "-m", "pip", "install",
                   "--target", str(target), "--no-cache-dir", "--disable-pip-version-check"]
        cmd += ["--index-url", index_url]
        for url in extra_index_urls:
            cmd += ["--extra-index-url", url]
        if ctx.settings.installer == "uv" and extra_index_urls:
            # Let uv pick the best match across indexes instead of the first.
            cmd += ["--index-strategy", "unsafe-best-match"]
        if requirements is not None:
            cmd += ["-r", str(requirements)]
        cmd += list(packages or [])
        return cmd

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        if not self.requirements.is_file():
            raise StageError(
                f"Backend requirements manifest not found: {self.requirements}",
                stage=self.name,
            )

        try:
            selection: DependencySet = select_dependency_set(
                BuildConfiguration(values=ctx.params()), self.python_version
            )
        except ConfigurationError as exc:
            raise StageError(str(exc), stage=self.name) from exc
        target = ctx.output / "site-packages"
        target.mkdir(parents=True)

        manifest = ctx.workspace / "requirements.txt"
        manifest.write_bytes(self.requirements.read_bytes())

        logger.info(
            "Installing %s from %s",
            ", ".join(selection.accelerator_packages),
            selection.accelerator_index_url,
        )
        ctx.run(
            self.install_command(
                ctx, target, selection.accelerator_index_url, [],
                packages=selection.accelerator_packages,
            ),
            what="accelerator package install",
        )
        ctx.run(
            self.install_command(
                ctx, target, PYPI_INDEX, [selection.accelerator_index_url],
                requirements=manifest,
            ),
            what="backend requirements install",
        )

        installed = scan_site_packages(target)
        violations = find_forbidden(selection, installed)
        if violations:
            raise StageError(
                f"{selection.accelerator} profile resolved accelerator builds it cannot run",
                stage=self.name,
                diagnostics="\n".join(violations),
            )

        (ctx.output / "packages.json").write_text(
            json.dumps([d.model_dump() for d in installed], indent=2), encoding="utf-8"
        )
        (ctx.output / "selection.json").write_text(
            selection.model_dump_json(indent=2), encoding="utf-8"
        )
        logger.info("Backend environment resolved: %d distribution(s)", len(installed))
        return {"accelerator": selection.accelerator, "distributions": len(installed)}

