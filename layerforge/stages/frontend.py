"""Frontend asset builder.

Compiles the web client into a static asset tree.  Independent of every
other stage.  The frontend project is an external collaborator whose only
contract is: ``npm ci`` installs it and ``npm run build`` writes static
assets into its build directory.

Artifact layout::

    build/          compiled static assets
    CHANGELOG.md    release notes (if the project has one)
    package.json    frontend manifest (version source for the UI)
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, ClassVar

from layerforge.core.fs import copy_tree
from layerforge.errors import StageError
from layerforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

# Files copied next to the compiled assets when present.
RELEASE_FILES: tuple[str, ...] = ("CHANGELOG.md", "package.json")


class FrontendAssetStage(BaseStage):
    """Compile the web client with npm inside a private copy of its source."""

    name: ClassVar[str] = "frontend"
    display_name: ClassVar[str] = "Frontend Assets"
    version: ClassVar[str] = "1"
    params: ClassVar[tuple[str, ...]] = ("build_hash",)

    def __init__(self, source_dir: Path, *, build_dir: str = "build") -> None:
        self.source_dir = Path(source_dir)
        self.build_dir = build_dir

    def sources(self) -> dict[str, Path]:
        return {"frontend": self.source_dir}

    def options(self) -> dict[str, Any]:
        return {"build_dir": self.build_dir}

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        if not (self.source_dir / "package.json").is_file():
            raise StageError(
                f"No package.json in frontend source {self.source_dir}",
                stage=self.name,
            )

        # Build in a private copy so node_modules and build output never
        # land in the caller's tree or leak into other stages.
        project = copy_tree(self.source_dir, ctx.workspace / "src")
        npm = ctx.settings.npm_executable
        env = {
            "APP_BUILD_HASH": str(ctx.param("build_hash")),
            "NODE_ENV": "production",
            "npm_config_cache": str(ctx.workspace / ".npm"),
            "npm_config_update_notifier": "false",
        }

        install = ["ci"] if (project / "package-lock.json").is_file() else ["install"]
        ctx.run([npm, *install, "--no-audit", "--no-fund"], cwd=project, env=env, what="npm install")
        ctx.run([npm, "run", "build"], cwd=project, env=env, what="npm run build")

        built = project / self.build_dir
        if not built.is_dir() or not any(built.iterdir()):
            raise StageError(
                f"npm run build produced no assets in {self.build_dir}/",
                stage=self.name,
            )

        shutil.copytree(built, ctx.output / "build", symlinks=True)
        shipped = ["build"]
        for filename in RELEASE_FILES:
            candidate = project / filename
            if candidate.is_file():
                shutil.copy2(candidate, ctx.output / filename)
                shipped.append(filename)

        asset_count = sum(1 for p in (ctx.output / "build").rglob("*") if p.is_file())
        logger.info("Frontend built: %d asset file(s)", asset_count)
        return {"asset_count": asset_count, "files": shipped}
