"""Stage 1 — Design Rule Check (the gate).

Runs every configured checker concurrently, parses each report, and
evaluates the gate over the combined gating reports. The decision is only
computed after *all* checkers have finished; a partial report set never
produces one.

Nothing is written to the artifact store here: the reports live in the
run ledger (as captured tool output) and in the stage output.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from boardforge.core.gate import GateEvaluator
from boardforge.core.report_parser import ReportParser
from boardforge.core.tool_runner import ConfigurationError
from boardforge.models.reports import Report
from boardforge.models.stages import VALIDATE
from boardforge.models.tools import ReportFormat, ToolInvocation, ToolResult
from boardforge.stages.base import BaseStage, StageContext
from boardforge.stages.errors import MissingOutputError

logger = logging.getLogger(__name__)


class ValidationStage(BaseStage):
    """Stage 1: Design Rule Check — decides whether the run proceeds."""

    is_gate: ClassVar[bool] = True

    def __init__(
        self,
        parser: ReportParser | None = None,
        evaluator: GateEvaluator | None = None,
    ) -> None:
        self._parser = parser or ReportParser()
        self._evaluator = evaluator or GateEvaluator()

    @property
    def stage_id(self) -> str:
        return VALIDATE

    @property
    def display_name(self) -> str:
        return "Design Rule Check"

    def execute(self, context: StageContext) -> dict[str, Any]:
        checks = context.config.validation.checks
        if not checks:
            raise ConfigurationError("No validation checks configured")

        results = context.run_tools(checks)
        reports = [
            self._report(context, check, result)
            for check, result in zip(checks, results)
        ]
        for report in reports:
            for finding in report.findings:
                logger.info(
                    "[%s] %s - %s - %s",
                    report.source,
                    finding.severity,
                    finding.description,
                    "; ".join(finding.items),
                )

        gating = [r for c, r in zip(checks, reports) if c.gating] or reports
        decision = self._evaluator.evaluate(
            Report.combine(gating, source="gate")
        )
        return {
            "gate_decision": decision,
            "reports": {r.source: r.counters for r in reports},
            "gating_reports": [r.source for r in gating],
        }

    def _report(
        self, context: StageContext, check: ToolInvocation, result: ToolResult
    ) -> Report:
        """Prefer the structured report file; fall back to the tool's text."""
        if check.report_format is ReportFormat.JSON and check.outputs:
            path = context.resolve(check.outputs[0])
            if not path.is_file():
                raise MissingOutputError(
                    f"{check.name} did not write its report {path}"
                )
            raw = path.read_text(encoding="utf-8", errors="replace")
            return self._parser.parse(
                raw, ReportFormat.JSON, revision=context.revision, source=check.name
            )
        return self._parser.parse(
            result.captured_output,
            check.report_format,
            revision=context.revision,
            source=check.name,
        )
