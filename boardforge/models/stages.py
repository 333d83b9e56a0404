"""Stage state machine models — deterministic transitions and the default DAG."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageState(str, Enum):
    """Strict state model for each pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES: frozenset[StageState] = frozenset(
    {StageState.SUCCEEDED, StageState.FAILED, StageState.SKIPPED}
)

# Valid state transitions, enforced by StageMachine.
# RUNNING -> SKIPPED covers a stage that discovers at pull time that its
# upstream never produced anything.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.PENDING: {StageState.RUNNING, StageState.SKIPPED},
    StageState.RUNNING: {StageState.SUCCEEDED, StageState.FAILED, StageState.SKIPPED},
    StageState.SUCCEEDED: set(),  # terminal
    StageState.FAILED: set(),  # terminal
    StageState.SKIPPED: set(),  # terminal
}


class StageDefinition(BaseModel):
    """Defines a pipeline stage and its prerequisites.

    The prerequisite list encodes the DAG: a stage cannot enter RUNNING
    unless every prerequisite is SUCCEEDED.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    ordinal: float
    prerequisites: list[str] = []
    is_gate: bool = False  # produces the run's GateDecision


VALIDATE = "validate"
EXPORT = "export"
PUBLISH = "publish"
POSTPROCESS = "postprocess"

# The standard hardware CI pipeline: publish and post-process both hang
# off export and may run side by side.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id=VALIDATE,
        display_name="Design Rule Check",
        ordinal=1.0,
        prerequisites=[],
        is_gate=True,
    ),
    StageDefinition(
        stage_id=EXPORT,
        display_name="Export Manufacturing Files",
        ordinal=2.0,
        prerequisites=[VALIDATE],
    ),
    StageDefinition(
        stage_id=PUBLISH,
        display_name="Publish Release",
        ordinal=3.0,
        prerequisites=[EXPORT],
    ),
    StageDefinition(
        stage_id=POSTPROCESS,
        display_name="Post-process Fabrication Files",
        ordinal=4.0,
        prerequisites=[EXPORT],
    ),
]
