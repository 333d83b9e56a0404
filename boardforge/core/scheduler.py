"""Stage scheduler — runs the stage DAG for one trigger event.

Ready stages (every prerequisite SUCCEEDED) are submitted to a thread
pool; the scheduler thread alone performs state transitions, so the
state machine sees one writer per run. Outcomes:

- the handler returns            -> SUCCEEDED
- the handler raises StageNotRun -> SKIPPED (an upstream produced nothing)
- the handler raises anything else -> FAILED (logged, recorded)

A gate stage whose decision is PROCEED=false skips every transitive
dependent. A stage whose prerequisite FAILED or was SKIPPED can never
start and is SKIPPED too; branches with no path to it keep running.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from boardforge.core.artifact_store import ArtifactStore, StageNotRun
from boardforge.core.run_ledger import RunLedger
from boardforge.core.stage_machine import StageMachine
from boardforge.core.tool_runner import ToolFailure, ToolRunner
from boardforge.models.config import PipelineConfig
from boardforge.models.ledger import EntryKind
from boardforge.models.release import ReleaseRecord
from boardforge.models.reports import GateDecision
from boardforge.models.revision import TriggerEvent
from boardforge.models.stages import StageState
from boardforge.models.tools import ToolResult
from boardforge.stages.base import BaseStage, StageContext, StageResult

logger = logging.getLogger(__name__)


class GateAlreadyDecided(RuntimeError):
    """Raised when a second gate decision is recorded for the same run."""


def new_run_id(trigger: TriggerEvent) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"bf-{ts}-{trigger.revision.short}-{uuid.uuid4().hex[:4]}"


@dataclass(frozen=True)
class RunEnvironment:
    """Everything a run needs besides the trigger and the stage handlers."""

    config: PipelineConfig
    store: ArtifactStore
    runner: ToolRunner
    workspace: Path
    work_root: Path
    max_parallel_tools: int = 8


class RunResult(BaseModel):
    """Final, observable outcome of one pipeline run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    trigger: TriggerEvent
    states: dict[str, StageState]
    gate_decision: GateDecision | None = None
    results: dict[str, StageResult] = {}
    errors: dict[str, str] = {}
    skip_reasons: dict[str, str] = {}
    release: ReleaseRecord | None = None
    started_at: datetime
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def failed_stages(self) -> list[str]:
        return [sid for sid, state in self.states.items() if state == StageState.FAILED]

    @property
    def succeeded(self) -> bool:
        """True when no stage FAILED (a closed gate is not a failure)."""
        return not self.failed_stages

    @property
    def gate_passed(self) -> bool:
        return self.gate_decision is not None and self.gate_decision.proceed


class StageScheduler:
    """Executes stage handlers over the machine's prerequisite graph.

    Parameters
    ----------
    machine:
        State machine (and through it the graph and the ledger).
    handlers:
        One handler per stage id of the graph.
    ledger:
        Receives tool outputs, the gate decision and the release record.
    max_workers:
        Stages allowed to run at the same time.
    """

    def __init__(
        self,
        machine: StageMachine,
        handlers: Mapping[str, BaseStage],
        ledger: RunLedger,
        *,
        max_workers: int = 4,
    ) -> None:
        missing = [sid for sid in machine.graph.stage_ids if sid not in handlers]
        if missing:
            raise ValueError(f"No handler registered for stage(s): {', '.join(missing)}")
        self._machine = machine
        self._graph = machine.graph
        self._handlers = dict(handlers)
        self._ledger = ledger
        self._max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        trigger: TriggerEvent,
        environment: RunEnvironment,
        *,
        run_id: str | None = None,
    ) -> RunResult:
        """Run every stage to a terminal state and report the outcome."""
        run_id = run_id or new_run_id(trigger)
        started_at = datetime.now(timezone.utc)
        revision = trigger.revision.long
        self._machine.initialize_run(run_id)
        logger.info("Run %s started for %s on %s", run_id, trigger.revision, trigger.branch)

        results: dict[str, StageResult] = {}
        errors: dict[str, str] = {}
        skip_reasons: dict[str, str] = {}
        gate_decision: GateDecision | None = None
        release: ReleaseRecord | None = None

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="stage"
        ) as pool:
            running: dict[Future[StageResult], str] = {}
            while True:
                for stage_id in self._graph.stage_ids:
                    states = self._machine.get_all_states(run_id)
                    if states[stage_id] != StageState.PENDING:
                        continue
                    blocked = [
                        p
                        for p in self._graph.get_prerequisites(stage_id)
                        if states[p] in (StageState.FAILED, StageState.SKIPPED)
                    ]
                    if blocked:
                        reason = f"prerequisite {blocked[0]} is {states[blocked[0]].value}"
                        self._skip(run_id, stage_id, reason, revision, skip_reasons)
                        continue
                    if not self._graph.are_prerequisites_met(stage_id, states):
                        continue
                    self._machine.transition(
                        run_id, stage_id, StageState.RUNNING, revision=revision
                    )
                    context = StageContext(
                        run_id=run_id,
                        stage_id=stage_id,
                        trigger=trigger,
                        config=environment.config,
                        store=environment.store,
                        runner=environment.runner.with_recorder(
                            self._recorder(run_id, stage_id, revision)
                        ),
                        workspace=environment.workspace,
                        work_dir=environment.work_root / run_id,
                        max_parallel_tools=environment.max_parallel_tools,
                        gate_decision=gate_decision,
                        prior_results=dict(results),
                    )
                    future = pool.submit(self._handlers[stage_id].run_stage, context)
                    running[future] = stage_id

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    stage_id = running.pop(future)
                    try:
                        result = future.result()
                    except StageNotRun as exc:
                        self._skip(run_id, stage_id, str(exc), revision, skip_reasons)
                        continue
                    except Exception as exc:
                        self._fail(run_id, stage_id, exc, revision, errors)
                        continue

                    definition = self._graph.get_stage_definition(stage_id)
                    if definition.is_gate and result.gate_decision is None:
                        self._fail(
                            run_id,
                            stage_id,
                            RuntimeError(f"Gate stage {stage_id} produced no decision"),
                            revision,
                            errors,
                        )
                        continue
                    if result.gate_decision is not None:
                        try:
                            gate_decision = self._record_gate(
                                run_id, stage_id, result.gate_decision, gate_decision, revision
                            )
                        except GateAlreadyDecided as exc:
                            self._fail(run_id, stage_id, exc, revision, errors)
                            continue
                    if result.release is not None:
                        release = result.release
                        self._ledger.record(
                            run_id,
                            stage_id,
                            EntryKind.RELEASE,
                            release.model_dump(mode="json"),
                            revision=revision,
                        )

                    results[stage_id] = result
                    self._machine.transition(
                        run_id,
                        stage_id,
                        StageState.SUCCEEDED,
                        revision=revision,
                        detail={
                            "output_hash": result.output_hash,
                            "duration_seconds": round(result.duration_seconds, 3),
                        },
                    )
                    if result.gate_decision is not None and not result.gate_decision.proceed:
                        failing = ", ".join(
                            f"{k}={v}" for k, v in result.gate_decision.failing_counters.items()
                        )
                        for dependent in self._graph.cascade_skip(
                            stage_id, self._machine.get_all_states(run_id)
                        ):
                            self._skip(
                                run_id,
                                dependent,
                                f"gate {stage_id} said stop ({failing})",
                                revision,
                                skip_reasons,
                            )

        states = self._machine.get_all_states(run_id)
        logger.info(
            "Run %s finished: %s",
            run_id,
            ", ".join(f"{sid}={state.value}" for sid, state in states.items()),
        )
        return RunResult(
            run_id=run_id,
            trigger=trigger,
            states=states,
            gate_decision=gate_decision,
            results=results,
            errors=errors,
            skip_reasons=skip_reasons,
            release=release,
            started_at=started_at,
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _skip(
        self,
        run_id: str,
        stage_id: str,
        reason: str,
        revision: str,
        skip_reasons: dict[str, str],
    ) -> None:
        logger.info("Skipping %s: %s", stage_id, reason)
        skip_reasons[stage_id] = reason
        self._machine.transition(
            run_id,
            stage_id,
            StageState.SKIPPED,
            revision=revision,
            detail={"reason": reason},
        )

    def _fail(
        self,
        run_id: str,
        stage_id: str,
        exc: BaseException,
        revision: str,
        errors: dict[str, str],
    ) -> None:
        message = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, ToolFailure):
            logger.error("Stage %s failed: %s", stage_id, message)
        else:
            logger.error("Stage %s failed: %s", stage_id, message, exc_info=exc)
        errors[stage_id] = message
        detail: dict[str, Any] = {"error": message, "error_type": type(exc).__name__}
        if isinstance(exc, ToolFailure):
            detail["exit_status"] = exc.exit_status
        self._machine.transition(
            run_id, stage_id, StageState.FAILED, revision=revision, detail=detail
        )

    def _record_gate(
        self,
        run_id: str,
        stage_id: str,
        decision: GateDecision,
        current: GateDecision | None,
        revision: str,
    ) -> GateDecision:
        if current is not None:
            raise GateAlreadyDecided(f"Run {run_id} already has a gate decision")
        self._ledger.record(
            run_id,
            stage_id,
            EntryKind.GATE_DECISION,
            decision.model_dump(mode="json"),
            revision=revision,
        )
        return decision

    def _recorder(self, run_id: str, stage_id: str, revision: str):
        """Ledger writer for every tool result of one stage, failures included.

        Both streams are recorded whole; the ledger is the only place a
        run keeps them."""

        def record(result: ToolResult) -> None:
            self._ledger.record(
                run_id,
                stage_id,
                EntryKind.TOOL_OUTPUT,
                {
                    "tool": result.name,
                    "argv": result.argv,
                    "exit_status": result.exit_status,
                    "timed_out": result.timed_out,
                    "duration_seconds": round(result.duration_seconds, 3),
                    "stdout": result.stdout,
                    "stderr": result.stderr,
                },
                revision=revision,
            )

        return record
