"""Abstract base stage and its isolated execution context.

Every concrete stage inherits from ``BaseStage`` and implements only
``execute()``.  The engine drives the lifecycle:

    cache_key -> (reuse | execute in StageContext) -> commit

A stage sees the build only through its ``StageContext``: the parameters it
declared in ``params``, the artifacts of the stages it declared in
``inputs``, a private workspace, and a private output directory.  Reading
anything else raises ``StageError``.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, ClassVar, final

from layerforge.config import ForgeSettings
from layerforge.core.commands import CommandResult, CommandRunner, curated_environment
from layerforge.core.hasher import compute_stage_key, content_address, path_digest
from layerforge.errors import StageError
from layerforge.models.artifacts import Artifact
from layerforge.models.config import BuildConfiguration

logger = logging.getLogger(__name__)

# Names skipped when digesting source trees for cache keys.
SOURCE_DIGEST_IGNORE: frozenset[str] = frozenset(
    {".git", "node_modules", "__pycache__", ".pytest_cache", ".mypy_cache", "build", "dist"}
)


class StageContext:
    """Everything a stage may touch while it runs.

    Parameters
    ----------
    stage:
        The stage being executed.
    config:
        The resolved build configuration.  Only ``stage.params`` are readable.
    inputs:
        Committed artifacts of the stages named in ``stage.inputs``.
    output:
        Private staging directory the stage fills with its artifact.
    workspace:
        Private scratch directory (tool caches, copies of sources).
    settings:
        Tool settings (toolchain executables, retry policy).
    runner:
        Command runner for external tools.
    timeout:
        Seconds the stage may run; ``None`` for no limit.
    """

    def __init__(
        self,
        stage: BaseStage,
        config: BuildConfiguration,
        inputs: Mapping[str, Artifact],
        output: Path,
        workspace: Path,
        settings: ForgeSettings,
        runner: CommandRunner,
        timeout: float | None = None,
    ) -> None:
        self.stage = stage
        self._config = config
        self._inputs = dict(inputs)
        self.output = output
        self.workspace = workspace
        self.settings = settings
        self.runner = runner
        self.timeout = timeout
        self._started: float | None = None
        self.cancelled = threading.Event()

    # ------------------------------------------------------------------
    # Declared access
    # ------------------------------------------------------------------

    def param(self, name: str) -> Any:
        """Read a declared build parameter."""
        if name not in self.stage.params:
            raise StageError(
                f"Stage {self.stage.name} read undeclared parameter {name!r}",
                stage=self.stage.name,
            )
        return self._config[name]

    def params(self) -> dict[str, Any]:
        return self._config.subset(self.stage.params)

    def input(self, stage_name: str) -> Artifact:
        """Return the artifact of a declared upstream stage."""
        if stage_name not in self.stage.inputs:
            raise StageError(
                f"Stage {self.stage.name} read undeclared input {stage_name!r}",
                stage=self.stage.name,
            )
        return self._inputs[stage_name]

    def has_input(self, stage_name: str) -> bool:
        return stage_name in self._inputs

    # ------------------------------------------------------------------
    # Time budget
    # ------------------------------------------------------------------

    @property
    def started(self) -> float | None:
        """Monotonic time a worker began executing the stage, if it has."""
        return self._started

    def mark_started(self) -> None:
        self._started = time.monotonic()

    def remaining(self) -> float | None:
        """Seconds left before the stage timeout, or None if unlimited."""
        if self.timeout is None:
            return None
        if self._started is None:
            return self.timeout
        return max(0.0, self.timeout - (time.monotonic() - self._started))

    def checkpoint(self) -> None:
        """Raise if the build was aborted or the stage ran out of time."""
        if self.cancelled.is_set():
            raise StageError("Build aborted", stage=self.stage.name)
        left = self.remaining()
        if left is not None and left <= 0:
            raise StageError(
                f"Stage exceeded its timeout of {self.timeout:.0f}s",
                stage=self.stage.name,
            )

    # ------------------------------------------------------------------
    # External tools
    # ------------------------------------------------------------------

    def environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Curated process environment rooted in this stage's workspace."""
        return curated_environment(self.workspace, extra)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        what: str = "",
    ) -> CommandResult:
        """Run an external command; raise ``StageError`` unless it succeeds."""
        self.checkpoint()
        result = self.runner.run(
            list(args),
            cwd=cwd or self.workspace,
            env=self.environment(env),
            timeout=self.remaining(),
        )
        if result.timed_out:
            raise StageError(
                f"{what or args[0]} timed out",
                stage=self.stage.name,
                diagnostics=result.diagnostics(),
            )
        if not result.ok:
            raise StageError(
                f"{what or args[0]} exited with status {result.returncode}",
                stage=self.stage.name,
                diagnostics=result.diagnostics(),
            )
        return result


class BaseStage(abc.ABC):
    """Abstract base for all build stages.

    Subclasses **must** define:
        * ``name``         - unique stage name (e.g. ``"frontend"``).
        * ``display_name`` - human-readable name for reports.
        * ``execute(ctx)`` - fill ``ctx.output`` with the artifact.

    Subclasses **may** define:
        * ``version`` - bump when the stage's behaviour changes so stale
          cached artifacts are not reused.
        * ``params``  - build parameters the stage reads.
        * ``inputs``  - stages whose artifacts the stage consumes.
        * ``cacheable`` - set ``False`` to always execute.
        * ``timeout`` - per-stage timeout overriding the tool default.
        * ``sources()`` - paths outside the pipeline whose content feeds
          the cache key.
        * ``options()`` - constructor choices that change the output.
    """

    name: ClassVar[str]
    display_name: ClassVar[str]
    version: ClassVar[str] = "1"
    params: ClassVar[tuple[str, ...]] = ()
    inputs: tuple[str, ...] = ()
    cacheable: ClassVar[bool] = True
    timeout: float | None = None

    @abc.abstractmethod
    def execute(self, ctx: StageContext) -> dict[str, Any] | None:
        """Produce the stage's artifact inside ``ctx.output``.

        Returns optional metadata recorded alongside the artifact.
        """
        ...

    def sources(self) -> dict[str, Path]:
        """External source paths that influence this stage's output."""
        return {}

    def options(self) -> dict[str, Any]:
        """Stage options (JSON-serializable) that influence its output."""
        return {}

    @final
    def cache_key(
        self,
        config: BuildConfiguration,
        inputs: Mapping[str, Artifact],
    ) -> str:
        """Fingerprint of everything that determines this stage's output."""
        source_digests = {
            label: path_digest(Path(path), SOURCE_DIGEST_IGNORE)
            for label, path in sorted(self.sources().items())
        }
        options = self.options()
        if options:
            source_digests["options"] = content_address(options)
        key = compute_stage_key(
            self.name,
            self.version,
            config.subset(self.params),
            {name: inputs[name].fingerprint for name in sorted(self.inputs)},
            source_digests,
        )
        logger.debug("%s [%s] cache key %s", self.display_name, self.name, key[:12])
        return key

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} inputs={list(self.inputs)!r}>"
