"""Prerequisite DAG with skip cascading.

The graph enforces:
- No stage runs unless all prerequisites are SUCCEEDED.
- When a stage is skipped or fails, every transitive dependent that has
  not started yet can never run, so it is SKIPPED.
"""

from __future__ import annotations

from collections import deque

from boardforge.models.stages import StageDefinition, StageState


class PrerequisiteNotMetError(RuntimeError):
    """Raised when a stage cannot run because prerequisites are not met."""


class CyclicDependencyError(ValueError):
    """Raised when the prerequisite graph contains a cycle."""


class PrerequisiteGraph:
    """Directed acyclic graph of stage prerequisites."""

    def __init__(self, stage_definitions: list[StageDefinition]) -> None:
        self._stages: dict[str, StageDefinition] = {
            sd.stage_id: sd for sd in stage_definitions
        }
        if len(self._stages) != len(stage_definitions):
            raise ValueError("Duplicate stage_id in stage definitions")
        for sd in stage_definitions:
            unknown = [p for p in sd.prerequisites if p not in self._stages]
            if unknown:
                raise ValueError(
                    f"Stage {sd.stage_id} depends on unknown stage(s): {', '.join(unknown)}"
                )
        # Forward edges: stage_id -> list of prerequisite stage_ids
        self._prerequisites: dict[str, list[str]] = {
            sd.stage_id: list(sd.prerequisites) for sd in stage_definitions
        }
        # Reverse edges: stage_id -> list of stages that depend on it
        self._dependents: dict[str, list[str]] = {
            sd.stage_id: [] for sd in stage_definitions
        }
        for sd in stage_definitions:
            for prereq in sd.prerequisites:
                self._dependents[prereq].append(sd.stage_id)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm, ties broken by ordinal; raises on a cycle."""
        in_degree = {sid: len(prereqs) for sid, prereqs in self._prerequisites.items()}
        queue = deque(
            sorted(
                (sid for sid, deg in in_degree.items() if deg == 0),
                key=lambda s: self._stages[s].ordinal,
            )
        )
        result = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(
                self._dependents.get(node, []),
                key=lambda s: self._stages[s].ordinal,
            ):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._stages):
            raise CyclicDependencyError(
                f"Prerequisite graph has a cycle. "
                f"Visited {len(result)}/{len(self._stages)} stages."
            )
        return result

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        """Return all stage_ids in topological order."""
        return list(self._order)

    def get_stage_definition(self, stage_id: str) -> StageDefinition:
        return self._stages[stage_id]

    def get_prerequisites(self, stage_id: str) -> list[str]:
        """Return direct prerequisite stage_ids for a stage."""
        return list(self._prerequisites.get(stage_id, []))

    def get_dependents(self, stage_id: str) -> list[str]:
        """Return all transitive dependent stage_ids (BFS)."""
        result = []
        queue = deque(self._dependents.get(stage_id, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    # ------------------------------------------------------------------
    # Prerequisite checking
    # ------------------------------------------------------------------

    def are_prerequisites_met(
        self, stage_id: str, states: dict[str, StageState]
    ) -> bool:
        """Check if all prerequisites for a stage are SUCCEEDED."""
        return all(
            states.get(prereq) == StageState.SUCCEEDED
            for prereq in self._prerequisites.get(stage_id, [])
        )

    def get_blocking_reasons(
        self, stage_id: str, states: dict[str, StageState]
    ) -> list[str]:
        """Return human-readable reasons why a stage cannot start."""
        reasons = []
        for prereq in self._prerequisites.get(stage_id, []):
            state = states.get(prereq, StageState.PENDING)
            if state != StageState.SUCCEEDED:
                name = self._stages[prereq].display_name
                reasons.append(f"{name} ({prereq}) is {state.value}")
        return reasons

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def cascade_skip(
        self, stage_id: str, states: dict[str, StageState]
    ) -> list[str]:
        """Return the transitive dependents of ``stage_id`` still PENDING.

        These can never reach RUNNING once ``stage_id`` ended without
        succeeding (or its gate said stop). Topological order.
        """
        dependents = set(self.get_dependents(stage_id))
        return [
            sid
            for sid in self._order
            if sid in dependents and states.get(sid, StageState.PENDING) == StageState.PENDING
        ]
