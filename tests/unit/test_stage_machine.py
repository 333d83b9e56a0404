"""Tests for the StageMachine — transition table, prerequisites, ledger."""

from __future__ import annotations

import pytest

from boardforge.core.prerequisite_graph import PrerequisiteGraph, PrerequisiteNotMetError
from boardforge.core.run_ledger import RunLedger
from boardforge.core.stage_machine import InvalidTransitionError, StageMachine
from boardforge.models.ledger import EntryKind
from boardforge.models.stages import TERMINAL_STATES, VALID_TRANSITIONS, StageState


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert VALID_TRANSITIONS[state] == set()

    def test_pending_exits(self):
        assert VALID_TRANSITIONS[StageState.PENDING] == {StageState.RUNNING, StageState.SKIPPED}

    def test_running_exits(self):
        assert VALID_TRANSITIONS[StageState.RUNNING] == {
            StageState.SUCCEEDED,
            StageState.FAILED,
            StageState.SKIPPED,
        }


class TestStageMachine:
    def test_initialize_run(self, stage_machine: StageMachine, run_id: str):
        states = stage_machine.initialize_run(run_id)
        assert set(states.values()) == {StageState.PENDING}
        assert list(states) == ["validate", "export", "publish", "postprocess"]

    def test_happy_path(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "validate", StageState.RUNNING)
        stage_machine.transition(run_id, "validate", StageState.SUCCEEDED)
        stage_machine.transition(run_id, "export", StageState.RUNNING)
        assert stage_machine.get_current_state(run_id, "export") == StageState.RUNNING

    def test_prerequisites_enforced(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        with pytest.raises(PrerequisiteNotMetError, match="validate"):
            stage_machine.transition(run_id, "export", StageState.RUNNING)

    def test_pending_to_succeeded_rejected(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "validate", StageState.SUCCEEDED)

    def test_terminal_is_final(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "validate", StageState.SKIPPED)
        for target in StageState:
            with pytest.raises(InvalidTransitionError):
                stage_machine.transition(run_id, "validate", target)

    def test_skipped_prerequisite_blocks_running(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "validate", StageState.SKIPPED)
        can_start, reasons = stage_machine.can_start(run_id, "export")
        assert not can_start
        assert "skipped" in reasons[0]

    def test_transitions_are_recorded(
        self, stage_machine: StageMachine, ledger: RunLedger, run_id: str
    ):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(
            run_id, "validate", StageState.RUNNING, revision="abc", detail={"k": 1}
        )
        (entry,) = ledger.get_run_entries(run_id, kind=EntryKind.TRANSITION)
        assert entry.state_transition == "pending->running"
        assert entry.revision == "abc"
        assert entry.payload == {"k": 1}

    def test_state_rebuilt_from_ledger(
        self, ledger: RunLedger, graph: PrerequisiteGraph, run_id: str
    ):
        first = StageMachine(ledger, graph)
        first.initialize_run(run_id)
        first.transition(run_id, "validate", StageState.RUNNING)
        first.transition(run_id, "validate", StageState.FAILED)

        second = StageMachine(ledger, graph)
        states = second.get_all_states(run_id)
        assert states["validate"] == StageState.FAILED
        assert states["export"] == StageState.PENDING
        assert second.get_available_transitions(run_id, "validate") == set()
