"""Stage graph engine: runs stages in dependency order, in parallel.

Scheduling is purely artifact-driven.  A stage is submitted to the worker
pool as soon as every stage it consumes has a committed artifact, so stages
with no dependency path between them run concurrently.  Before executing a
stage the engine computes its cache key; a committed artifact with the same
key is reused instead of re-running the stage.

Failure policy:
- the first ``StageError`` (or any exception, wrapped as ``StageError``)
  aborts the build: pending stages are cancelled, running stages are told to
  stop and awaited, and no new stage starts;
- a stage's staging output is committed only after it returns successfully,
  so an aborted or failed stage never leaves an artifact marked complete;
- stages are not retried; resource fetches inside a stage may retry.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from layerforge.config import ForgeSettings
from layerforge.core.artifact_store import ArtifactStore, Staging
from layerforge.core.commands import CommandRunner, SubprocessRunner
from layerforge.core.graph import StageGraph
from layerforge.errors import StageError
from layerforge.models.artifacts import Artifact
from layerforge.models.config import BuildConfiguration
from layerforge.models.stages import VALID_TRANSITIONS, StageRecord, StageState
from layerforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

TransitionHook = Callable[[str, StageState], None]

_QUEUED_POLL_SECONDS = 0.1


class BuildResult(BaseModel):
    """Artifacts and per-stage records of one engine run."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    build_id: str
    artifacts: dict[str, Artifact]
    records: list[StageRecord]
    error: StageError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def record(self, name: str) -> StageRecord:
        for rec in self.records:
            if rec.name == name:
                return rec
        raise KeyError(name)


@dataclass
class _Job:
    name: str
    key: str
    staging: Staging
    ctx: StageContext

    def elapsed(self, now: float) -> float:
        """Seconds since a worker picked the job up; 0 while it is queued."""
        started = self.ctx.started
        return 0.0 if started is None else now - started


class StageGraphEngine:
    """Executes a stage graph against one build configuration.

    Parameters
    ----------
    store:
        Artifact store used for cache lookups and commits.
    settings:
        Tool settings (parallelism, default stage timeout, work dir).
    runner:
        Command runner handed to every stage context.
    on_transition:
        Optional callback invoked on every stage state change.
    """

    def __init__(
        self,
        store: ArtifactStore,
        settings: ForgeSettings | None = None,
        runner: CommandRunner | None = None,
        *,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or ForgeSettings()
        self.runner = runner or SubprocessRunner()
        self._hook = on_transition
        self.last_result: BuildResult | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(
        self, stages: Iterable[BaseStage], config: BuildConfiguration
    ) -> list[dict[str, Any]]:
        """Predict cache reuse without executing anything.

        Keys can only be computed for stages whose inputs are all reusable;
        downstream of a cache miss the key is unknown until the build runs.
        """
        graph = StageGraph(stages)
        known: dict[str, Artifact] = {}
        rows: list[dict[str, Any]] = []
        for name in graph.stage_names:
            stage = graph.stage(name)
            row: dict[str, Any] = {
                "name": name,
                "display_name": stage.display_name,
                "inputs": list(stage.inputs),
                "params": list(stage.params),
                "key": "",
                "reuse": False,
            }
            if all(up in known for up in stage.inputs):
                key = stage.cache_key(config, {up: known[up] for up in stage.inputs})
                row["key"] = key
                existing = self.store.lookup(name, key) if stage.cacheable else None
                if existing is not None:
                    known[name] = existing
                    row["reuse"] = True
            rows.append(row)
        return rows

    def run(
        self,
        stages: Iterable[BaseStage],
        config: BuildConfiguration,
        *,
        build_id: str | None = None,
        timeouts: Mapping[str, float] | None = None,
    ) -> BuildResult:
        """Execute every stage; return the result or raise ``StageError``.

        The result (including records of cancelled stages) is also kept on
        ``last_result`` so callers can report on failed builds.
        """
        graph = StageGraph(stages)
        build_id = build_id or f"lf-{uuid.uuid4().hex[:10]}"
        timeouts = dict(timeouts or {})
        self.store.purge_staging()

        with self.store.build_scope(build_id):
            artifacts, records, failure = self._schedule(graph, config, build_id, timeouts)

        result = BuildResult(
            build_id=build_id,
            artifacts=artifacts,
            records=[records[name] for name in graph.stage_names if name in records],
            error=failure,
        )
        self.last_result = result
        if failure is not None:
            raise failure
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(
        self,
        graph: StageGraph,
        config: BuildConfiguration,
        build_id: str,
        timeouts: Mapping[str, float],
    ) -> tuple[dict[str, Artifact], dict[str, StageRecord], StageError | None]:
        states: dict[str, StageState] = {name: StageState.PENDING for name in graph.stage_names}
        artifacts: dict[str, Artifact] = {}
        records: dict[str, StageRecord] = {}
        running: dict[Future, _Job] = {}
        abandoned: list[Future] = []
        failure: StageError | None = None

        def transition(name: str, target: StageState, **fields: Any) -> None:
            current = states[name]
            if target not in VALID_TRANSITIONS[current]:
                raise RuntimeError(
                    f"Invalid stage transition {name}: {current.value} -> {target.value}"
                )
            states[name] = target
            stage = graph.stage(name)
            previous = records.get(name)
            base = previous.model_dump() if previous else {
                "name": name,
                "display_name": stage.display_name,
                "inputs": list(stage.inputs),
            }
            base.update(fields, state=target)
            records[name] = StageRecord(**base)
            logger.info("%s [%s] %s", stage.display_name, name, target.value)
            if self._hook is not None:
                self._hook(name, target)

        def fail(job_name: str, exc: StageError, duration: float = 0.0) -> StageError:
            if not exc.stage:
                exc.stage = job_name
            transition(
                job_name,
                StageState.FAILED,
                duration_seconds=duration,
                error=exc.message,
            )
            return exc

        executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_parallel_stages),
            thread_name_prefix="layerforge-stage",
        )
        try:
            while True:
                # Schedule everything that became ready; reuse may unlock more.
                progressed = failure is None
                while progressed and failure is None:
                    progressed = False
                    for name in graph.ready(states):
                        stage = graph.stage(name)
                        inputs = {up: artifacts[up] for up in stage.inputs}
                        try:
                            key = stage.cache_key(config, inputs)
                        except OSError as exc:
                            failure = fail(
                                name,
                                StageError(f"Cannot fingerprint stage sources: {exc}"),
                            )
                            break

                        existing = self.store.lookup(name, key) if stage.cacheable else None
                        if existing is not None:
                            artifacts[name] = existing
                            transition(name, StageState.REUSED, fingerprint=key)
                            progressed = True
                            continue

                        job = self._start(stage, config, inputs, key, build_id, timeouts)
                        transition(name, StageState.RUNNING, fingerprint=key)
                        running[executor.submit(self._execute, stage, job.ctx)] = job

                if failure is not None:
                    for name, state in states.items():
                        if state == StageState.PENDING:
                            transition(name, StageState.CANCELLED)
                    for job in running.values():
                        job.ctx.cancelled.set()

                if not running:
                    break

                done, _ = wait(
                    list(running),
                    timeout=self._next_deadline(running.values()),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    job = running.pop(future)
                    elapsed = job.elapsed(time.monotonic())
                    try:
                        metadata = future.result()
                    except StageError as exc:
                        self.store.discard(job.staging)
                        err = fail(job.name, exc, elapsed)
                        failure = failure or err
                        continue
                    except Exception as exc:  # noqa: BLE001 - surfaced as StageError
                        self.store.discard(job.staging)
                        err = fail(
                            job.name,
                            StageError(
                                f"{type(exc).__name__}: {exc}",
                                stage=job.name,
                                diagnostics=repr(exc),
                            ),
                            elapsed,
                        )
                        err.__cause__ = exc
                        failure = failure or err
                        continue

                    artifact = self.store.commit(
                        job.staging, job.key, metadata=metadata or {}
                    )
                    artifacts[job.name] = artifact
                    transition(job.name, StageState.COMPLETE, duration_seconds=elapsed)
                    shutil.rmtree(job.ctx.workspace, ignore_errors=True)

                # Enforce per-stage timeouts on stages a worker has started;
                # queued stages have not begun their time budget.
                now = time.monotonic()
                for future, job in list(running.items()):
                    limit = job.ctx.timeout
                    if limit is None or job.ctx.started is None:
                        continue
                    if job.elapsed(now) > limit:
                        running.pop(future)
                        job.ctx.cancelled.set()
                        staging = job.staging
                        future.add_done_callback(lambda _f, s=staging: self.store.discard(s))
                        abandoned.append(future)
                        err = fail(
                            job.name,
                            StageError(f"Stage exceeded its timeout of {limit:.0f}s"),
                            job.elapsed(now),
                        )
                        failure = failure or err
        finally:
            executor.shutdown(wait=not abandoned, cancel_futures=True)
        return artifacts, records, failure

    def _start(
        self,
        stage: BaseStage,
        config: BuildConfiguration,
        inputs: dict[str, Artifact],
        key: str,
        build_id: str,
        timeouts: Mapping[str, float],
    ) -> _Job:
        staging = self.store.begin(stage.name, build_id)
        workspace = Path(self.settings.work_dir) / build_id / stage.name
        if workspace.exists():
            shutil.rmtree(workspace)
        workspace.mkdir(parents=True)
        timeout = timeouts.get(stage.name, stage.timeout or self.settings.stage_timeout_seconds)
        ctx = StageContext(
            stage=stage,
            config=config,
            inputs=inputs,
            output=staging.tree,
            workspace=workspace,
            settings=self.settings,
            runner=self.runner,
            timeout=timeout,
        )
        # Uncacheable output is committed per build so a rerun never gets
        # handed the previous build's tree.
        commit_key = key if stage.cacheable else f"{key}.{build_id}"
        return _Job(name=stage.name, key=commit_key, staging=staging, ctx=ctx)

    @staticmethod
    def _execute(stage: BaseStage, ctx: StageContext) -> dict[str, Any]:
        ctx.mark_started()
        logger.debug("%s [%s] executing in %s", stage.display_name, stage.name, ctx.workspace)
        return stage.execute(ctx) or {}

    @staticmethod
    def _next_deadline(jobs: Iterable[_Job]) -> float | None:
        """Seconds until the earliest started stage hits its timeout.

        While a stage with a timeout is still queued the loop polls, so its
        deadline is enforced soon after a worker picks it up.
        """
        now = time.monotonic()
        remaining: list[float] = []
        for job in jobs:
            if job.ctx.timeout is None:
                continue
            if job.ctx.started is None:
                remaining.append(_QUEUED_POLL_SECONDS)
            else:
                remaining.append(job.ctx.timeout - job.elapsed(now))
        if not remaining:
            return None
        return max(0.01, min(remaining))
