"""Build orchestrator: the central coordinator for layerforge builds.

The BuildOrchestrator wires together the configuration resolver, the stage
pipeline, the StageGraphEngine, the ArtifactStore and the ModelCache into
one build invocation:

    resolve -> build_pipeline -> engine.run -> publish -> build-report.json

A build either yields one complete, permission-correct artifact or none.
The report is written for failed builds too, naming the failing stage.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from layerforge.assembly.archive import audit_archive, export_rootfs
from layerforge.assembly.identity import identity_from_config
from layerforge.config import ForgeSettings
from layerforge.core.artifact_store import ArtifactStore
from layerforge.core.commands import CommandRunner
from layerforge.core.dependencies import select_dependency_set
from layerforge.core.engine import BuildResult, StageGraphEngine, TransitionHook
from layerforge.core.resolver import default_matrix, load_variant_matrix, resolve
from layerforge.errors import AssemblyError, ConfigurationError, StageError
from layerforge.modelcache.cache import ModelCache
from layerforge.modelcache.fetchers import ModelFetcher
from layerforge.models.artifacts import Artifact
from layerforge.models.cache import ModelKind
from layerforge.models.config import BuildConfiguration, VariantMatrix
from layerforge.models.reports import BuildReport
from layerforge.stages import build_pipeline
from layerforge.stages.assemble import ROOTFS
from layerforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

REPORT_NAME = "build-report.json"
ARCHIVE_NAME = "rootfs.tar"
ROOTFS_LINK = "rootfs"


class BuildOrchestrator:
    """Resolve, run and publish one build.

    Parameters
    ----------
    frontend_dir:
        Frontend project directory.
    backend_dir:
        Backend source directory (with its requirements manifest).
    settings:
        Tool settings.  Uses environment-driven defaults if not provided.
    runner:
        Command runner for external tools.
    fetchers:
        Model fetch backends per kind; defaults to Hub + tiktoken.
    matrix_path:
        Optional TOML variant matrix replacing the built-in one.
    on_transition:
        Callback for stage state changes (live display).
    """

    def __init__(
        self,
        frontend_dir: Path,
        backend_dir: Path,
        *,
        settings: ForgeSettings | None = None,
        runner: CommandRunner | None = None,
        fetchers: Mapping[ModelKind, ModelFetcher] | None = None,
        matrix_path: Path | None = None,
        on_transition: TransitionHook | None = None,
        pipeline_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.frontend_dir = Path(frontend_dir)
        self.backend_dir = Path(backend_dir)
        self.settings = settings or ForgeSettings()
        self.matrix: VariantMatrix = (
            load_variant_matrix(matrix_path) if matrix_path else default_matrix()
        )
        self.fetchers = fetchers
        self.pipeline_options = dict(pipeline_options or {})

        # Core subsystems
        self.store = ArtifactStore(self.settings.artifact_dir)
        self.model_cache = ModelCache(self.settings.model_cache_dir, verify=self.settings.cache_verify)
        self.engine = StageGraphEngine(
            self.store, self.settings, runner, on_transition=on_transition
        )

    # ------------------------------------------------------------------
    # Configuration and planning
    # ------------------------------------------------------------------

    def resolve(
        self,
        overrides: Mapping[str, Any] | None = None,
        *,
        profile: str | None = None,
    ) -> BuildConfiguration:
        """Resolve env-supplied and caller-supplied overrides."""
        merged: dict[str, Any] = dict(self.settings.build_params_from_env())
        merged.update(overrides or {})
        return resolve(self.matrix, merged, profile=profile)

    def stages(self, config: BuildConfiguration) -> list[BaseStage]:
        return build_pipeline(
            config,
            frontend_dir=self.frontend_dir,
            backend_dir=self.backend_dir,
            model_cache=self.model_cache,
            fetchers=self.fetchers,
            **self.pipeline_options,
        )

    def plan(self, config: BuildConfiguration) -> list[dict[str, Any]]:
        """Stage graph with cache keys and reuse predictions."""
        stages = self.stages(config)
        self.check(config, stages)
        return self.engine.plan(stages, config)

    @staticmethod
    def check(config: BuildConfiguration, stages: list[BaseStage]) -> None:
        """Reject *config* if the pipeline cannot run it.

        Raises
        ------
        ConfigurationError
            If a stage declares a parameter the configuration has no value
            for, or the dependency selection cannot run on the base flavor.
        """
        missing = {
            stage.name: absent
            for stage in stages
            if (absent := config.missing(stage.params))
        }
        if missing:
            detail = "; ".join(
                f"{name} needs {', '.join(absent)}" for name, absent in missing.items()
            )
            raise ConfigurationError(f"Configuration is missing stage parameters: {detail}")
        select_dependency_set(config)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        config: BuildConfiguration,
        *,
        output_dir: Path | None = None,
        export_archive: bool | None = None,
        timeouts: Mapping[str, float] | None = None,
    ) -> BuildReport:
        """Run the pipeline and publish the final artifact.

        Raises ``ConfigurationError`` before any stage runs if the pipeline
        cannot run *config*, and the failing ``StageError`` after writing
        the report.
        """
        stages = self.stages(config)
        self.check(config, stages)
        output_dir = Path(output_dir or self.settings.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        export = self.settings.export_archive if export_archive is None else export_archive
        started = datetime.now(timezone.utc)
        identity_from_config(config)

        logger.info(
            "Building profile=%s flavor=%s config=%s",
            config.profile or "-",
            config.get("backend_flavor"),
            config.fingerprint()[:19],
        )
        try:
            result = self.engine.run(stages, config, timeouts=timeouts)
            final = result.artifacts["assemble"]
            archive = self._publish(final, output_dir, export=export, config=config)
        except StageError as exc:
            report = self._report(
                config, self.engine.last_result, started,
                error=exc, output_dir=output_dir,
            )
            self.write_report(report, output_dir)
            raise

        report = self._report(
            config, result, started,
            artifact=final, archive=archive, output_dir=output_dir,
        )
        self.write_report(report, output_dir)
        logger.info("Build %s succeeded: %s", result.build_id, report.artifact_path)
        return report

    def _publish(
        self,
        final: Artifact,
        output_dir: Path,
        *,
        export: bool,
        config: BuildConfiguration,
    ) -> Path | None:
        """Link the final rootfs into *output_dir* and export it if needed."""
        rootfs = final.path / ROOTFS
        link = output_dir / ROOTFS_LINK
        if link.is_symlink() or link.exists():
            if link.is_dir() and not link.is_symlink():
                raise StageError(
                    f"{link} exists and is not a link; refusing to replace it",
                    stage="assemble",
                )
            link.unlink()
        os.symlink(rootfs.resolve(), link, target_is_directory=True)

        # Unprivileged builders cannot chown; the archive carries ownership.
        ownership = final.metadata.get("ownership", "filesystem")
        if not export and ownership != "archive":
            return None

        identity = identity_from_config(config)
        archive = export_rootfs(rootfs, output_dir / ARCHIVE_NAME, identity)
        violations = audit_archive(archive, identity)
        if violations:
            archive.unlink()
            raise AssemblyError(
                f"Exported archive is not owned by {identity.spec}",
                violations=violations,
                stage="assemble",
                diagnostics="\n".join(violations[:50]),
            )
        return archive

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report(
        self,
        config: BuildConfiguration,
        result: BuildResult | None,
        started: datetime,
        *,
        output_dir: Path,
        artifact: Artifact | None = None,
        archive: Path | None = None,
        error: StageError | None = None,
    ) -> BuildReport:
        entrypoint: list[str] = []
        if artifact is not None:
            entrypoint = list(artifact.metadata.get("entrypoint", []))
        return BuildReport(
            build_id=result.build_id if result else "",
            profile=config.profile,
            succeeded=error is None,
            configuration=dict(config.values),
            stages=list(result.records) if result else [],
            artifact_path=str(output_dir / ROOTFS_LINK) if artifact else "",
            archive_path=str(archive) if archive else "",
            runtime_identity=identity_from_config(config).spec,
            entrypoint=entrypoint,
            error=error.message if error else "",
            failed_stage=error.stage if error else "",
            started_at=started,
            finished_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def write_report(report: BuildReport, output_dir: Path) -> Path:
        path = Path(output_dir) / REPORT_NAME
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        return path
