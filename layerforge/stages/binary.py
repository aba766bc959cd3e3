"""Single-binary packager (optional ``single-binary`` backend flavor).

Freezes the backend source, its resolved environment and the prefetched
model cache into one executable with PyInstaller.  Libraries that load
submodules dynamically (the ML and tokenizer stacks) are invisible to
PyInstaller's static analysis, so every one of them is listed explicitly
with ``--hidden-import`` and ``--collect-all``.

A binary missing one of them only fails on first use, so the stage ends
with a mandatory smoke test: the produced binary is started with the smoke
arguments and must exit 0 without an import error.  If it does not, the
stage raises ``PackagingError`` and nothing is committed.

Artifact layout::

    backend_app     the executable
    binary.json     hidden imports, bundled data, size
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import stat
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, ClassVar

from layerforge.core.commands import CommandResult
from layerforge.core.fs import copy_tree
from layerforge.errors import PackagingError, StageError
from layerforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

BINARY_NAME = "backend_app"

# Dynamically loaded packages PyInstaller cannot discover on its own.
DEFAULT_HIDDEN_IMPORTS: tuple[str, ...] = (
    "torch",
    "sentence_transformers",
    "faster_whisper",
    "tiktoken",
)

# Where bundled data lands inside the frozen application.
BUNDLED_MODELS_DIR = "data/cache"

_MISSING_MODULE_RE = re.compile(
    r"(?:ModuleNotFoundError|ImportError): No module named ['\"]?(?P<module>[\w.]+)['\"]?"
)
_IMPORT_ERROR_RE = re.compile(r"ImportError: (?P<detail>.+)")


def parse_missing_module(output: str) -> str:
    """The module named in an import failure, or an empty string."""
    match = _MISSING_MODULE_RE.search(output)
    return match["module"] if match else ""


def has_import_failure(output: str) -> bool:
    return bool(_MISSING_MODULE_RE.search(output) or _IMPORT_ERROR_RE.search(output))


class SingleBinaryStage(BaseStage):
    """Freeze backend + environment + models into one executable.

    Parameters
    ----------
    source_dir:
        Backend application source tree.
    entry_script:
        Script inside *source_dir* that starts the backend.
    hidden_imports:
        Packages included with ``--hidden-import`` and ``--collect-all``.
    data_dirs:
        Directories inside *source_dir* (schema migrations and other
        state-initialization data) bundled as resources when present.
    smoke_args:
        Arguments the smoke test starts the binary with.  The backend must
        import its full startup path and exit 0 for them.
    smoke_env:
        Extra environment for the smoke test.
    bundle_models:
        Embed the model cache in the binary.
    """

    name: ClassVar[str] = "binary"
    display_name: ClassVar[str] = "Single-Binary Packager"
    version: ClassVar[str] = "1"
    params: ClassVar[tuple[str, ...]] = ("build_hash",)

    def __init__(
        self,
        source_dir: Path,
        *,
        entry_script: str = "main.py",
        hidden_imports: Sequence[str] = DEFAULT_HIDDEN_IMPORTS,
        data_dirs: Sequence[str] = ("migrations",),
        smoke_args: Sequence[str] = ("--help",),
        smoke_env: Mapping[str, str] | None = None,
        bundle_models: bool = True,
    ) -> None:
        self.source_dir = Path(source_dir)
        self.entry_script = entry_script
        self.hidden_imports = tuple(hidden_imports)
        self.data_dirs = tuple(data_dirs)
        self.smoke_args = tuple(smoke_args)
        self.smoke_env = dict(smoke_env or {})
        self.bundle_models = bundle_models
        self.inputs = ("backend-env", "models")

    def sources(self) -> dict[str, Path]:
        return {"backend": self.source_dir}

    def options(self) -> dict[str, Any]:
        return {
            "entry_script": self.entry_script,
            "hidden_imports": list(self.hidden_imports),
            "data_dirs": list(self.data_dirs),
            "smoke_args": list(self.smoke_args),
            "smoke_env": dict(sorted(self.smoke_env.items())),
            "bundle_models": self.bundle_models,
        }

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def pyinstaller_command(
        self,
        ctx: StageContext,
        project: Path,
        site_packages: Path,
        models: Path,
    ) -> list[str]:
        """The PyInstaller invocation for this build."""
        sep = os.pathsep
        cmd = [
            ctx.settings.pyinstaller_executable,
            "--onefile", str(project / self.entry_script),
            "--name", BINARY_NAME,
            "--clean", "--noconfirm",
            "--distpath", str(ctx.workspace / "dist"),
            "--workpath", str(ctx.workspace / "pyi-build"),
            "--specpath", str(ctx.workspace),
            "--paths", str(site_packages),
        ]
        for module in self.hidden_imports:
            cmd += ["--hidden-import", module]
        for module in self.hidden_imports:
            cmd += ["--collect-all", module]
        if self.bundle_models:
            cmd += ["--add-data", f"{models}{sep}{BUNDLED_MODELS_DIR}"]
        for rel in self.data_dirs:
            if (project / rel).is_dir():
                cmd += ["--add-data", f"{project / rel}{sep}{rel}"]
        return cmd

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        if not (self.source_dir / self.entry_script).is_file():
            raise StageError(
                f"Backend entry script {self.entry_script} not found in {self.source_dir}",
                stage=self.name,
            )

        site_packages = ctx.input("backend-env").path / "site-packages"
        models = ctx.input("models").path
        project = copy_tree(self.source_dir, ctx.workspace / "src")

        env = {
            "PYTHONPATH": os.pathsep.join([str(site_packages), str(project)]),
            "APP_BUILD_HASH": str(ctx.param("build_hash")),
        }
        logger.info(
            "Freezing backend with %d hidden import(s): %s",
            len(self.hidden_imports),
            ", ".join(self.hidden_imports),
        )
        ctx.run(
            self.pyinstaller_command(ctx, project, site_packages, models),
            cwd=project,
            env=env,
            what="pyinstaller",
        )

        built = ctx.workspace / "dist" / BINARY_NAME
        if not built.is_file():
            raise PackagingError(
                f"PyInstaller reported success but produced no {BINARY_NAME}",
                stage=self.name,
            )

        self._smoke_test(ctx, built)

        binary = ctx.output / BINARY_NAME
        shutil.copy2(built, binary)
        binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        info = {
            "name": BINARY_NAME,
            "hidden_imports": list(self.hidden_imports),
            "bundled_models": self.bundle_models,
            "size": binary.stat().st_size,
        }
        (ctx.output / "binary.json").write_text(json.dumps(info, indent=2), encoding="utf-8")
        logger.info("Single binary ready: %s (%d bytes)", BINARY_NAME, info["size"])
        return {"size": info["size"], "hidden_imports": list(self.hidden_imports)}

    def _smoke_test(self, ctx: StageContext, binary: Path) -> CommandResult:
        """Start the binary once; raise ``PackagingError`` unless it is healthy."""
        ctx.checkpoint()
        timeout = ctx.settings.smoke_test_timeout_seconds
        left = ctx.remaining()
        if left is not None:
            timeout = min(timeout, left)

        smoke_dir = ctx.workspace / "smoke"
        smoke_dir.mkdir(exist_ok=True)
        env = curated_smoke_env(ctx, smoke_dir, self.smoke_env)
        result = ctx.runner.run(
            [str(binary), *self.smoke_args], cwd=smoke_dir, env=env, timeout=timeout
        )
        output = result.diagnostics()

        if result.timed_out:
            raise PackagingError(
                f"Smoke test timed out after {timeout:.0f}s",
                stage=self.name,
                diagnostics=output,
            )
        if has_import_failure(output):
            missing = parse_missing_module(output)
            raise PackagingError(
                f"Smoke test failed: binary cannot import {missing or 'a required module'}; "
                "add it to the hidden imports",
                missing_module=missing,
                stage=self.name,
                diagnostics=output,
            )
        if not result.ok:
            raise PackagingError(
                f"Smoke test exited with status {result.returncode}",
                stage=self.name,
                diagnostics=output,
            )
        logger.info("Smoke test passed: %s %s", BINARY_NAME, " ".join(self.smoke_args))
        return result


def curated_smoke_env(
    ctx: StageContext, home: Path, extra: Mapping[str, str]
) -> dict[str, str]:
    """Offline, telemetry-free environment for the smoke run."""
    base = {
        "HF_HUB_OFFLINE": "1",
        "DO_NOT_TRACK": "true",
        "SCARF_NO_ANALYTICS": "true",
        "ANONYMIZED_TELEMETRY": "false",
    }
    base.update(extra)
    env = ctx.environment(base)
    env["HOME"] = str(home)
    return env
