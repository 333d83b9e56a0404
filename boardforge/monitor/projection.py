"""RunProjection — pure read-only view over the RunLedger.

Every call re-reads the ledger; the projection keeps no state of its
own. Used by ``boardforge status`` to show runs that happened in another
process (or on another CI worker sharing the ledger file).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from boardforge.core.run_ledger import LedgerIntegrityError, RunLedger
from boardforge.models.ledger import EntryKind, LedgerEntry
from boardforge.models.reports import GateDecision
from boardforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    StageDefinition,
    StageState,
)


class StageStatus(BaseModel):
    """Point-in-time status of a single stage, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    state: StageState = StageState.PENDING
    entered_at: datetime | None = None
    detail: str = ""
    tool_runs: int = 0
    failed_tools: list[str] = []


class RunSnapshot(BaseModel):
    """A frozen snapshot of one run, computed fresh on every call."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    revision: str = ""
    stages: list[StageStatus] = []
    gate_decision: GateDecision | None = None
    release_tag: str | None = None
    release_id: str | None = None
    chain_valid: bool = True
    last_updated: datetime | None = None

    @property
    def failed_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.FAILED]

    @property
    def skipped_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.SKIPPED]


class RunProjection:
    """Builds ``RunSnapshot`` views from the ledger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    stage_definitions:
        For display names and ordering; the default pipeline otherwise.
    """

    def __init__(
        self,
        ledger: RunLedger,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> None:
        self._ledger = ledger
        self._stage_defs = sorted(
            stage_definitions or DEFAULT_STAGE_DEFINITIONS, key=lambda sd: sd.ordinal
        )

    def snapshot(self, run_id: str) -> RunSnapshot:
        entries = self._ledger.get_run_entries(run_id)
        if not entries:
            raise KeyError(f"No ledger entries for run {run_id!r}")

        info = self._replay(entries)
        stages = [
            StageStatus(
                stage_id=sd.stage_id,
                display_name=sd.display_name,
                **info.get(sd.stage_id, {}),
            )
            for sd in self._stage_defs
        ]

        gate_decision = None
        release_tag = release_id = None
        for entry in entries:
            if entry.kind == EntryKind.GATE_DECISION:
                gate_decision = GateDecision.model_validate(entry.payload)
            elif entry.kind == EntryKind.RELEASE:
                release_tag = entry.payload.get("tag", {}).get("label")
                release_id = entry.payload.get("published_id")

        return RunSnapshot(
            run_id=run_id,
            revision=next((e.revision for e in entries if e.revision), ""),
            stages=stages,
            gate_decision=gate_decision,
            release_tag=release_tag,
            release_id=release_id,
            chain_valid=self._check_chain_valid(run_id),
            last_updated=entries[-1].timestamp_utc,
        )

    @staticmethod
    def _replay(entries: list[LedgerEntry]) -> dict[str, dict[str, Any]]:
        """Fold entries into per-stage fields."""
        result: dict[str, dict[str, Any]] = {}
        for entry in entries:
            info = result.setdefault(
                entry.stage_id, {"tool_runs": 0, "failed_tools": []}
            )
            if entry.kind == EntryKind.TOOL_OUTPUT:
                info["tool_runs"] += 1
                if entry.payload.get("exit_status") != 0:
                    info["failed_tools"].append(entry.payload.get("tool", "?"))
            elif entry.kind == EntryKind.TRANSITION and "->" in entry.state_transition:
                _, to_state = entry.state_transition.split("->", 1)
                info["state"] = StageState(to_state)
                info["entered_at"] = entry.timestamp_utc
                info["detail"] = str(
                    entry.payload.get("error") or entry.payload.get("reason") or ""
                )
        return result

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
