"""Tests for StageGraphEngine: scheduling, reuse, isolation, failure policy."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, ClassVar

import pytest

from layerforge.config import ForgeSettings
from layerforge.core.artifact_store import ArtifactStore
from layerforge.core.engine import StageGraphEngine
from layerforge.core.resolver import resolve
from layerforge.errors import ModelFetchError, StageError
from layerforge.models.stages import StageState
from layerforge.stages.base import BaseStage, StageContext

Action = Callable[[StageContext], None]


class _Stage(BaseStage):
    """Configurable stage recording how often it ran."""

    display_name: ClassVar[str] = "Test Stage"

    def __init__(
        self,
        name: str,
        inputs: tuple[str, ...] = (),
        *,
        action: Action | None = None,
        params: tuple[str, ...] = (),
        cacheable: bool = True,
        timeout: float | None = None,
        log: list[str] | None = None,
    ) -> None:
        self.name = name  # type: ignore[misc]
        self.inputs = inputs
        self.params = params  # type: ignore[misc]
        self.cacheable = cacheable  # type: ignore[misc]
        self.timeout = timeout
        self.action = action
        self.runs = 0
        self.log = log if log is not None else []

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        self.runs += 1
        self.log.append(f"start:{self.name}")
        if self.action is not None:
            self.action(ctx)
        (ctx.output / f"{self.name}.txt").write_text(self.name)
        self.log.append(f"end:{self.name}")
        return {"runs": self.runs}


@pytest.fixture
def engine(artifact_store: ArtifactStore, settings: ForgeSettings, runner) -> StageGraphEngine:
    return StageGraphEngine(artifact_store, settings, runner)


@pytest.fixture
def config():
    return resolve()


class TestScheduling:
    def test_runs_every_stage_and_commits(self, engine, config):
        stages = [_Stage("a"), _Stage("b", ("a",))]
        result = engine.run(stages, config)
        assert result.succeeded
        assert [r.state for r in result.records] == [StageState.COMPLETE, StageState.COMPLETE]
        assert (result.artifacts["b"].path / "b.txt").read_text() == "b"

    def test_independent_stages_run_concurrently(self, engine, config):
        barrier = threading.Barrier(2, timeout=5)

        def meet(_ctx: StageContext) -> None:
            barrier.wait()

        stages = [_Stage("left", action=meet), _Stage("right", action=meet)]
        result = engine.run(stages, config)
        assert result.succeeded

    def test_dependent_never_starts_before_inputs_complete(self, engine, config):
        log: list[str] = []

        def slow(_ctx: StageContext) -> None:
            time.sleep(0.05)

        stages = [
            _Stage("frontend", action=slow, log=log),
            _Stage("models", action=slow, log=log),
            _Stage("assemble", ("frontend", "models"), log=log),
        ]
        engine.run(stages, config)
        start = log.index("start:assemble")
        assert log.index("end:frontend") < start
        assert log.index("end:models") < start

    def test_second_run_reuses_artifacts(self, engine, config):
        a, b = _Stage("a"), _Stage("b", ("a",))
        engine.run([a, b], config)
        result = engine.run([a, b], config)
        assert a.runs == 1 and b.runs == 1
        assert result.record("a").state == StageState.REUSED
        assert result.record("b").state == StageState.REUSED

    def test_uncacheable_stage_always_runs(self, engine, config):
        a, final = _Stage("a"), _Stage("final", ("a",), cacheable=False)
        engine.run([a, final], config)
        result = engine.run([a, final], config)
        assert final.runs == 2
        assert result.record("final").state == StageState.COMPLETE

    def test_declared_parameter_change_invalidates_cache(self, engine):
        stage = _Stage("a", params=("port",))
        engine.run([stage], resolve(overrides={"port": 8080}))
        engine.run([stage], resolve(overrides={"port": 9090}))
        assert stage.runs == 2

    def test_undeclared_parameter_change_keeps_cache(self, engine):
        stage = _Stage("a", params=("port",))
        engine.run([stage], resolve(overrides={"whisper_model": "base"}))
        engine.run([stage], resolve(overrides={"whisper_model": "small"}))
        assert stage.runs == 1

    def test_upstream_change_invalidates_downstream(self, engine):
        a = _Stage("a", params=("port",))
        b = _Stage("b", ("a",))
        engine.run([a, b], resolve(overrides={"port": 1}))
        engine.run([a, b], resolve(overrides={"port": 2}))
        assert b.runs == 2

    def test_transition_hook(self, artifact_store, settings, runner, config):
        seen: list[tuple[str, StageState]] = []
        engine = StageGraphEngine(
            artifact_store, settings, runner,
            on_transition=lambda name, state: seen.append((name, state)),
        )
        engine.run([_Stage("a")], config)
        assert seen == [("a", StageState.RUNNING), ("a", StageState.COMPLETE)]


class TestIsolation:
    def test_undeclared_parameter_access_fails(self, engine, config):
        def peek(ctx: StageContext) -> None:
            ctx.param("uid")

        with pytest.raises(StageError, match="undeclared parameter"):
            engine.run([_Stage("a", action=peek)], config)

    def test_undeclared_input_access_fails(self, engine, config):
        def peek(ctx: StageContext) -> None:
            ctx.input("a")

        with pytest.raises(StageError, match="undeclared input"):
            engine.run([_Stage("a"), _Stage("b", action=peek)], config)

    def test_workspaces_are_private(self, engine, config):
        seen: dict[str, Path] = {}

        def record(ctx: StageContext) -> None:
            seen[ctx.stage.name] = ctx.workspace

        engine.run([_Stage("a", action=record), _Stage("b", action=record)], config)
        assert seen["a"] != seen["b"]
        assert seen["a"].name == "a"

    def test_curated_environment(self, engine, config, monkeypatch):
        monkeypatch.setenv("NPM_TOKEN", "leak-me")
        captured: dict[str, str] = {}

        def env(ctx: StageContext) -> None:
            captured.update(ctx.environment())

        engine.run([_Stage("a", action=env)], config)
        assert "NPM_TOKEN" not in captured
        assert captured["HOME"] == captured["TMPDIR"]


class TestFailure:
    def test_failure_cancels_pending_and_commits_nothing(self, engine, config, artifact_store):
        def boom(_ctx: StageContext) -> None:
            raise StageError("compiler exploded", diagnostics="line 1\nline 2")

        def patient(ctx: StageContext) -> None:
            for _ in range(200):
                ctx.checkpoint()
                time.sleep(0.01)

        stages = [
            _Stage("bad", action=boom),
            _Stage("slow", action=patient),
            _Stage("after", ("bad", "slow")),
        ]
        with pytest.raises(StageError) as info:
            engine.run(stages, config)

        assert info.value.stage == "bad"
        assert info.value.diagnostics == "line 1\nline 2"
        result = engine.last_result
        assert result is not None and not result.succeeded
        assert result.record("bad").state == StageState.FAILED
        assert result.record("after").state == StageState.CANCELLED
        assert artifact_store.list_artifacts("bad") == []
        assert stages[2].runs == 0

    def test_subclass_type_is_preserved(self, engine, config):
        def fetch_fails(_ctx: StageContext) -> None:
            raise ModelFetchError("gone", kind="embedding", identifier="model-A")

        with pytest.raises(ModelFetchError) as info:
            engine.run([_Stage("models", action=fetch_fails)], config)
        assert info.value.stage == "models"
        assert info.value.identifier == "model-A"

    def test_other_exceptions_are_wrapped(self, engine, config):
        def crash(_ctx: StageContext) -> None:
            raise KeyError("missing")

        with pytest.raises(StageError, match="KeyError") as info:
            engine.run([_Stage("a", action=crash)], config)
        assert info.value.stage == "a"
        assert isinstance(info.value.__cause__, KeyError)

    def test_timeout_fails_the_stage(self, engine, config, artifact_store):
        def hang(ctx: StageContext) -> None:
            for _ in range(500):
                ctx.checkpoint()
                time.sleep(0.01)

        with pytest.raises(StageError, match="timeout"):
            engine.run([_Stage("hang", action=hang, timeout=0.2)], config)
        assert engine.last_result.record("hang").state == StageState.FAILED
        assert artifact_store.list_artifacts("hang") == []

    def test_queued_stage_timeout_starts_when_it_runs(self, artifact_store, settings, runner, config):
        serial = StageGraphEngine(
            artifact_store, settings.model_copy(update={"max_parallel_stages": 1}), runner
        )

        def work(ctx: StageContext) -> None:
            for _ in range(8):
                ctx.checkpoint()
                time.sleep(0.05)

        stages = [
            _Stage("first", action=work, timeout=0.6),
            _Stage("second", action=work, timeout=0.6),
        ]
        result = serial.run(stages, config)
        assert [r.state for r in result.records] == [StageState.COMPLETE, StageState.COMPLETE]

    def test_failed_stage_runs_again_next_time(self, engine, config):
        attempts = {"n": 0}

        def flaky(_ctx: StageContext) -> None:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise StageError("first try fails")

        stage = _Stage("a", action=flaky)
        with pytest.raises(StageError):
            engine.run([stage], config)
        result = engine.run([stage], config)
        assert result.record("a").state == StageState.COMPLETE


class TestPlan:
    def test_plan_predicts_reuse(self, engine, config):
        a, b = _Stage("a"), _Stage("b", ("a",))
        before = engine.plan([a, b], config)
        assert [row["reuse"] for row in before] == [False, False]
        assert before[0]["key"] and before[1]["key"] == ""

        engine.run([a, b], config)
        after = engine.plan([a, b], config)
        assert [row["reuse"] for row in after] == [True, True]
        assert a.runs == 1


class TestSharedStore:
    def test_concurrent_builds_keep_each_others_staging(self, artifact_store, settings, runner, config):
        entered, release = threading.Event(), threading.Event()

        def hold(ctx: StageContext) -> None:
            (ctx.output / "partial").write_text("staged")
            entered.set()
            assert release.wait(5)
            (ctx.output / "done").write_text("finished")

        first = StageGraphEngine(artifact_store, settings, runner)
        second = StageGraphEngine(artifact_store, settings, runner)
        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(first.run, [_Stage("held", action=hold)], config)
            assert entered.wait(5)
            try:
                other = second.run([_Stage("other")], config)
            finally:
                release.set()
            result = pending.result(timeout=10)

        assert other.succeeded
        tree = result.artifacts["held"].path
        assert (tree / "partial").read_text() == "staged"
        assert (tree / "done").read_text() == "finished"

    def test_finished_build_leaves_no_staging(self, engine, config, artifact_store):
        engine.run([_Stage("a")], config)
        staging = artifact_store.base_path / ".staging"
        assert not staging.exists() or list(staging.iterdir()) == []
