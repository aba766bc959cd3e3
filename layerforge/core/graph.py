"""Stage dependency DAG.

Edges are artifact dependencies: a stage that declares another stage as an
input may only start once that stage's artifact is complete.  Stages with
no path between them are unordered and may run concurrently.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from layerforge.errors import ConfigurationError
from layerforge.models.stages import DONE_STATES, StageState

if TYPE_CHECKING:
    from layerforge.stages.base import BaseStage


class CyclicDependencyError(ConfigurationError):
    """Raised when the stage graph contains a cycle."""


class StageGraph:
    """Directed acyclic graph of stages keyed by stage name."""

    def __init__(self, stages: Iterable[BaseStage]) -> None:
        self._stages: dict[str, BaseStage] = {}
        for stage in stages:
            if stage.name in self._stages:
                raise ConfigurationError(f"Duplicate stage name {stage.name!r}")
            self._stages[stage.name] = stage

        # Forward edges: stage -> stages it consumes
        self._inputs: dict[str, list[str]] = {}
        # Reverse edges: stage -> stages consuming it
        self._dependents: dict[str, list[str]] = {name: [] for name in self._stages}
        for name, stage in self._stages.items():
            inputs = list(stage.inputs)
            for upstream in inputs:
                if upstream not in self._stages:
                    raise ConfigurationError(
                        f"Stage {name!r} consumes unknown stage {upstream!r}"
                    )
                self._dependents[upstream].append(name)
            self._inputs[name] = inputs

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        position = {name: i for i, name in enumerate(self._stages)}
        in_degree = {name: len(inputs) for name, inputs in self._inputs.items()}
        queue = deque(name for name in self._stages if in_degree[name] == 0)
        order: list[str] = []

        while queue:
            node = queue.popleft()
            order.append(node)
            for dep in sorted(self._dependents[node], key=position.__getitem__):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(order) != len(self._stages):
            stuck = sorted(set(self._stages) - set(order))
            raise CyclicDependencyError(
                f"Stage graph has a cycle through: {', '.join(stuck)}"
            )
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def stage_names(self) -> list[str]:
        """All stage names in topological order."""
        return list(self._order)

    def stage(self, name: str) -> BaseStage:
        return self._stages[name]

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def get_inputs(self, name: str) -> list[str]:
        """Direct upstream stages of *name*."""
        return list(self._inputs.get(name, []))

    def get_dependents(self, name: str) -> list[str]:
        """All transitive downstream stages of *name* (BFS order)."""
        result: list[str] = []
        queue = deque(self._dependents.get(name, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def get_ancestors(self, name: str) -> set[str]:
        """All transitive upstream stages of *name*."""
        seen: set[str] = set()
        stack = list(self._inputs.get(name, []))
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(self._inputs.get(node, []))
        return seen

    def independent(self, a: str, b: str) -> bool:
        """Whether no dependency path connects *a* and *b*."""
        return a not in self.get_ancestors(b) and b not in self.get_ancestors(a)

    def terminal_stages(self) -> list[str]:
        """Stages no other stage consumes."""
        return [name for name in self._order if not self._dependents[name]]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def inputs_complete(self, name: str, states: Mapping[str, StageState]) -> bool:
        return all(states.get(up) in DONE_STATES for up in self._inputs.get(name, []))

    def ready(self, states: Mapping[str, StageState]) -> list[str]:
        """PENDING stages whose inputs are all complete, in topological order."""
        return [
            name for name in self._order
            if states.get(name, StageState.PENDING) == StageState.PENDING
            and self.inputs_complete(name, states)
        ]

    def waiting_on(self, name: str, states: Mapping[str, StageState]) -> list[str]:
        """Human-readable reasons *name* cannot start yet."""
        return [
            f"{up} is {states.get(up, StageState.PENDING).value}"
            for up in self._inputs.get(name, [])
            if states.get(up) not in DONE_STATES
        ]
