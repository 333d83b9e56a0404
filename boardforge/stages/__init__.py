"""boardforge pipeline stages — registry mapping stage_id to stage class.

Usage::

    from boardforge.stages import STAGE_REGISTRY, STAGE_ORDER

    stage_cls = STAGE_REGISTRY["export"]
    result = stage_cls().run_stage(context)

The publish stage needs its backends and is built by the orchestrator.
"""

from __future__ import annotations

from boardforge.stages.base import BaseStage, StageContext, StageResult
from boardforge.stages.errors import MissingOutputError
from boardforge.stages.s1_validation import ValidationStage
from boardforge.stages.s2_export import ExportStage
from boardforge.stages.s3_publish import PublishStage
from boardforge.stages.s4_postprocess import PostprocessStage

# ---------------------------------------------------------------------------
# Stage registry: stage_id -> stage class
# ---------------------------------------------------------------------------

STAGE_REGISTRY: dict[str, type[BaseStage]] = {
    "validate": ValidationStage,
    "export": ExportStage,
    "publish": PublishStage,
    "postprocess": PostprocessStage,
}

# Ordered list matching the default pipeline execution order.
STAGE_ORDER: list[str] = ["validate", "export", "publish", "postprocess"]

# Gate stages: their GateDecision governs every dependent.
GATE_STAGE_IDS: frozenset[str] = frozenset(
    sid for sid, cls in STAGE_REGISTRY.items() if cls.is_gate
)

__all__ = [
    # Base
    "BaseStage",
    "StageContext",
    "StageResult",
    "MissingOutputError",
    # Registry
    "STAGE_REGISTRY",
    "STAGE_ORDER",
    "GATE_STAGE_IDS",
    # Concrete stages
    "ValidationStage",
    "ExportStage",
    "PublishStage",
    "PostprocessStage",
]
