"""Artifact assembler: the final runtime filesystem.

Always the last stage.  Composes the frontend assets, the chosen backend
(relocatable environment plus source, or the single binary) and the model
caches into one tree, creates the runtime identity, normalizes ownership and
permissions and declares the entry point.  The tree is audited before the
stage returns; any violation fails the build, so an artifact from this stage
is always permission-correct.

Artifact layout::

    rootfs/app/...          application tree (see ``layerforge.assembly.layout``)
    rootfs/etc/passwd       runtime account
    rootfs/etc/group        runtime group
    image-config.json       user, env, entrypoint, exposed port, labels

The stage is never served from cache: ownership depends on who runs the
build, and assembly is cheap compared to its inputs.
"""

from __future__ import annotations

import json
import logging
import shutil
import stat
from pathlib import Path
from typing import Any, ClassVar

from layerforge.assembly import layout
from layerforge.assembly.identity import account_files, can_apply_ownership, identity_from_config
from layerforge.assembly.permissions import apply_ownership, audit_tree, normalize_permissions
from layerforge.core.dependencies import RUNTIME_PYTHON, select_dependency_set
from layerforge.core.fs import BUILD_ONLY_PATTERNS, CACHE_PATTERNS, VCS_PATTERNS, copy_tree
from layerforge.errors import AssemblyError, StageError
from layerforge.models.cache import ModelKind
from layerforge.models.config import BuildConfiguration
from layerforge.stages.base import BaseStage, StageContext
from layerforge.stages.binary import BINARY_NAME
from layerforge.stages.models import read_models_index

logger = logging.getLogger(__name__)

ROOTFS = "rootfs"
IMAGE_CONFIG = "image-config.json"

# Process supervisor in front of the entry point (installed by the base flavor).
INIT = ["/usr/bin/tini", "--"]

_EXECUTABLE = 0o755
_READABLE = 0o644


class ArtifactAssemblerStage(BaseStage):
    """Merge stage outputs into the final, non-privileged runtime tree.

    Parameters
    ----------
    backend_source:
        Backend application source tree (copied for the environment flavor).
    backend_flavor:
        ``"environment"`` consumes ``backend-env``; ``"single-binary"``
        consumes ``binary``.
    backend_entry:
        Startup script inside the backend source (environment flavor).
    """

    name: ClassVar[str] = "assemble"
    display_name: ClassVar[str] = "Artifact Assembler"
    version: ClassVar[str] = "1"
    cacheable: ClassVar[bool] = False
    params: ClassVar[tuple[str, ...]] = (
        "backend_flavor",
        "base_flavor",
        "build_hash",
        "cuda_version",
        "embedding_model",
        "gid",
        "ollama_base_url",
        "port",
        "reranking_model",
        "thread_count",
        "tiktoken_encoding",
        "uid",
        "use_cuda",
        "use_ollama",
        "whisper_model",
    )

    def __init__(
        self,
        backend_source: Path,
        *,
        backend_flavor: str = "environment",
        backend_entry: str = "start.sh",
    ) -> None:
        if backend_flavor not in ("environment", "single-binary"):
            raise ValueError(f"Unknown backend flavor {backend_flavor!r}")
        self.backend_source = Path(backend_source)
        self.backend_flavor = backend_flavor
        self.backend_entry = backend_entry
        backend_stage = "binary" if backend_flavor == "single-binary" else "backend-env"
        self.inputs = ("frontend", backend_stage, "models")

    def sources(self) -> dict[str, Path]:
        return {"backend": self.backend_source}

    def options(self) -> dict[str, Any]:
        return {"backend_flavor": self.backend_flavor, "backend_entry": self.backend_entry}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        config = BuildConfiguration(values=ctx.params())
        if config["backend_flavor"] != self.backend_flavor:
            raise StageError(
                f"Assembler built for {self.backend_flavor!r} but the configuration "
                f"selects {config['backend_flavor']!r}",
                stage=self.name,
            )
        identity = identity_from_config(config)
        rootfs = ctx.output / ROOTFS
        rootfs.mkdir()

        self._install_frontend(ctx, rootfs)
        ctx.checkpoint()
        if self.backend_flavor == "single-binary":
            self._install_binary(ctx, rootfs)
        else:
            self._install_environment(ctx, rootfs)
        ctx.checkpoint()
        installed_models = self._install_models(ctx, rootfs)
        ctx.checkpoint()

        self._write(rootfs / layout.ENTRYPOINT_PATH,
                    layout.entrypoint_script(config, self.backend_entry), _EXECUTABLE)
        self._write(rootfs / layout.VERSION_PATH, f"{config['build_hash']}\n", _READABLE)
        accounts = account_files(identity)
        self._write(rootfs / layout.PASSWD_PATH, accounts["passwd"], _READABLE)
        self._write(rootfs / layout.GROUP_PATH, accounts["group"], _READABLE)
        (rootfs / layout.DATA_DIR).mkdir(parents=True, exist_ok=True)

        entries = normalize_permissions(rootfs)
        owned = can_apply_ownership(identity)
        if owned:
            apply_ownership(rootfs, identity)
        else:
            logger.warning(
                "Cannot chown to %s as an unprivileged builder; ownership is "
                "carried by the exported archive",
                identity.spec,
            )

        violations = audit_tree(
            rootfs,
            identity,
            check_owner=owned,
            vendored=(layout.SITE_PACKAGES_DIR,),
        )
        if violations:
            raise AssemblyError(
                f"Assembled tree failed its audit with {len(violations)} violation(s)",
                violations=violations,
                stage=self.name,
                diagnostics="\n".join(violations[:50]),
            )

        python_version = RUNTIME_PYTHON
        if self.backend_flavor == "environment":
            selection = json.loads(
                (ctx.input("backend-env").path / "selection.json").read_text(encoding="utf-8")
            )
            python_version = selection.get("python_version") or RUNTIME_PYTHON
        image_config = self.image_config(config, identity.spec, python_version)
        (ctx.output / IMAGE_CONFIG).write_text(
            json.dumps(image_config, indent=2, sort_keys=True), encoding="utf-8"
        )
        logger.info(
            "Assembled %d entr(ies) for %s (%d model(s))",
            entries, identity.spec, installed_models,
        )
        return {
            "entries": entries,
            "identity": identity.spec,
            "ownership": "filesystem" if owned else "archive",
            "entrypoint": image_config["entrypoint"] + image_config["cmd"],
        }

    # ------------------------------------------------------------------
    # Pieces
    # ------------------------------------------------------------------

    def _install_frontend(self, ctx: StageContext, rootfs: Path) -> None:
        frontend = ctx.input("frontend").path
        copy_tree(frontend / "build", rootfs / layout.FRONTEND_DIR)
        for filename in layout.FRONTEND_RELEASE_FILES:
            if (frontend / filename).is_file():
                shutil.copy2(frontend / filename, rootfs / layout.APP_DIR / filename)

    def _install_environment(self, ctx: StageContext, rootfs: Path) -> None:
        entry = self.backend_source / self.backend_entry
        if not entry.is_file():
            raise StageError(
                f"Backend entry point {self.backend_entry} not found in {self.backend_source}",
                stage=self.name,
            )
        backend = rootfs / layout.BACKEND_DIR
        copy_tree(self.backend_source, backend, exclude=BUILD_ONLY_PATTERNS + ("site-packages",))
        installed_entry = backend / self.backend_entry
        installed_entry.chmod(stat.S_IMODE(installed_entry.stat().st_mode) | _EXECUTABLE)

        site_packages = ctx.input("backend-env").path / "site-packages"
        copy_tree(
            site_packages,
            rootfs / layout.SITE_PACKAGES_DIR,
            exclude=VCS_PATTERNS + CACHE_PATTERNS,
        )

    def _install_binary(self, ctx: StageContext, rootfs: Path) -> None:
        binary = ctx.input("binary").path / BINARY_NAME
        target = rootfs / layout.BINARY_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(binary, target)
        target.chmod(_EXECUTABLE)

    def _install_models(self, ctx: StageContext, rootfs: Path) -> int:
        models = ctx.input("models").path
        index = read_models_index(models)
        for item in index:
            kind = ModelKind(item["kind"])
            copy_tree(
                models / item["path"],
                rootfs / layout.model_runtime_dir(kind),
                exclude=VCS_PATTERNS,
            )
        return len(index)

    @staticmethod
    def _write(path: Path, content: str, mode: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        path.chmod(mode)

    @staticmethod
    def image_config(
        config: BuildConfiguration, user: str, python_version: str = RUNTIME_PYTHON
    ) -> dict[str, Any]:
        """Runtime configuration consumed by the image tooling."""
        selection = select_dependency_set(config, python_version)
        env = layout.runtime_environment(config)
        return {
            "user": user,
            "working_dir": str(layout.APP_ROOT),
            "entrypoint": list(INIT),
            "cmd": [layout.runtime_path(layout.ENTRYPOINT_PATH)],
            "exposed_ports": [f"{config['port']}/tcp"],
            "env": [f"{key}={value}" for key, value in env.items()],
            "labels": {
                "org.opencontainers.image.revision": str(config["build_hash"]),
                "layerforge.backend-flavor": str(config["backend_flavor"]),
                "layerforge.base-flavor": str(config["base_flavor"]),
                "layerforge.accelerator": selection.accelerator,
            },
            "base": {
                "flavor": str(config["base_flavor"]),
                "system_packages": selection.system_packages,
                "python": selection.python_version,
                "bundled_runtime": selection.bundled_runtime,
            },
        }
