"""Tests for StageGraph: validation, ordering, readiness."""

from __future__ import annotations

from typing import Any, ClassVar

import pytest

from layerforge.core.graph import CyclicDependencyError, StageGraph
from layerforge.errors import ConfigurationError
from layerforge.models.stages import StageState
from layerforge.stages.base import BaseStage, StageContext


class _Stage(BaseStage):
    display_name: ClassVar[str] = "Test"

    def __init__(self, name: str, inputs: tuple[str, ...] = ()) -> None:
        self.name = name  # type: ignore[misc]
        self.inputs = inputs

    def execute(self, ctx: StageContext) -> dict[str, Any]:
        return {}


def _pipeline() -> StageGraph:
    return StageGraph([
        _Stage("frontend"),
        _Stage("backend-env"),
        _Stage("models"),
        _Stage("binary", ("backend-env", "models")),
        _Stage("assemble", ("frontend", "binary", "models")),
    ])


class TestStageGraph:
    def test_topological_order(self):
        order = _pipeline().stage_names
        assert order.index("binary") > order.index("backend-env")
        assert order.index("binary") > order.index("models")
        assert order[-1] == "assemble"

    def test_unknown_input(self):
        with pytest.raises(ConfigurationError, match="unknown stage"):
            StageGraph([_Stage("a", ("ghost",))])

    def test_duplicate_name(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            StageGraph([_Stage("a"), _Stage("a")])

    def test_cycle(self):
        with pytest.raises(CyclicDependencyError):
            StageGraph([_Stage("a", ("b",)), _Stage("b", ("a",))])

    def test_ready_initially_the_roots(self):
        graph = _pipeline()
        assert graph.ready({}) == ["frontend", "backend-env", "models"]

    def test_assemble_waits_for_every_input(self):
        graph = _pipeline()
        states = {
            "frontend": StageState.COMPLETE,
            "backend-env": StageState.REUSED,
            "models": StageState.COMPLETE,
            "binary": StageState.RUNNING,
            "assemble": StageState.PENDING,
        }
        assert "assemble" not in graph.ready(states)
        assert graph.waiting_on("assemble", states) == ["binary is running"]
        states["binary"] = StageState.COMPLETE
        assert graph.ready(states) == ["assemble"]

    def test_independence(self):
        graph = _pipeline()
        assert graph.independent("frontend", "models")
        assert graph.independent("frontend", "binary")
        assert not graph.independent("models", "assemble")

    def test_dependents_and_terminals(self):
        graph = _pipeline()
        assert set(graph.get_dependents("models")) == {"binary", "assemble"}
        assert graph.terminal_stages() == ["assemble"]
        assert graph.get_ancestors("assemble") == {"frontend", "backend-env", "models", "binary"}
