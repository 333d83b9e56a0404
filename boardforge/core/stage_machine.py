"""Deterministic stage state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Prerequisites checked before RUNNING
- Every transition recorded in the Run Ledger
"""

from __future__ import annotations

import threading
from typing import Any

from boardforge.core.prerequisite_graph import PrerequisiteGraph, PrerequisiteNotMetError
from boardforge.core.run_ledger import RunLedger
from boardforge.models.ledger import EntryKind, LedgerEntry
from boardforge.models.stages import VALID_TRANSITIONS, StageState


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class StageMachine:
    """Enforces the stage state machine with prerequisite checking.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    graph:
        The prerequisite graph for dependency checking.
    """

    def __init__(self, ledger: RunLedger, graph: PrerequisiteGraph) -> None:
        self._ledger = ledger
        self._graph = graph
        self._lock = threading.Lock()
        # In-memory state cache: run_id -> {stage_id -> StageState}
        self._states: dict[str, dict[str, StageState]] = {}

    @property
    def graph(self) -> PrerequisiteGraph:
        return self._graph

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def initialize_run(self, run_id: str) -> dict[str, StageState]:
        """Initialize all stages to PENDING for a new run."""
        states = {sid: StageState.PENDING for sid in self._graph.stage_ids}
        with self._lock:
            self._states[run_id] = states
        return dict(states)

    def get_current_state(self, run_id: str, stage_id: str) -> StageState:
        """Return the current state of a stage in a run."""
        return self.get_all_states(run_id).get(stage_id, StageState.PENDING)

    def get_all_states(self, run_id: str) -> dict[str, StageState]:
        """Return a snapshot of all stage states for a run."""
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            return dict(self._states[run_id])

    def _rebuild_state(self, run_id: str) -> None:
        """Rebuild in-memory state from the ledger (for inspection of past runs)."""
        states = {sid: StageState.PENDING for sid in self._graph.stage_ids}
        for entry in self._ledger.get_run_entries(run_id, kind=EntryKind.TRANSITION):
            if "->" in entry.state_transition:
                _, to_state = entry.state_transition.split("->", 1)
                try:
                    states[entry.stage_id] = StageState(to_state)
                except ValueError:
                    pass
        self._states[run_id] = states

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        stage_id: str,
        target_state: StageState,
        *,
        revision: str = "",
        detail: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Transition a stage to a new state, recording in the ledger.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is RUNNING, prerequisites are met.

        Returns the sealed LedgerEntry.
        """
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            states = self._states[run_id]
            current = states.get(stage_id, StageState.PENDING)

            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {stage_id} from {current.value} to {target_state.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            if target_state == StageState.RUNNING and not self._graph.are_prerequisites_met(
                stage_id, states
            ):
                reasons = self._graph.get_blocking_reasons(stage_id, states)
                raise PrerequisiteNotMetError(
                    f"Cannot start {stage_id}: prerequisites not met. "
                    f"Blocked by: {'; '.join(reasons)}"
                )

            entry = LedgerEntry(
                run_id=run_id,
                stage_id=stage_id,
                kind=EntryKind.TRANSITION,
                state_transition=f"{current.value}->{target_state.value}",
                revision=revision,
                payload=detail or {},
            )
            sealed = self._ledger.append(entry)
            states[stage_id] = target_state
            return sealed

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    def can_start(self, run_id: str, stage_id: str) -> tuple[bool, list[str]]:
        """Check if a stage can transition to RUNNING.

        Returns (can_start, blocking_reasons).
        """
        states = self.get_all_states(run_id)
        current = states.get(stage_id, StageState.PENDING)
        if current != StageState.PENDING:
            return False, [f"Stage is currently {current.value}, not pending"]

        if not self._graph.are_prerequisites_met(stage_id, states):
            return False, self._graph.get_blocking_reasons(stage_id, states)

        return True, []

    def get_available_transitions(
        self, run_id: str, stage_id: str
    ) -> set[StageState]:
        """Return the set of valid target states for a stage."""
        current = self.get_current_state(run_id, stage_id)
        return VALID_TRANSITIONS.get(current, set())
