"""Gate evaluation — a strict AND over independent fail conditions."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from boardforge.models.config import DEFAULT_TRACKED_COUNTERS
from boardforge.models.reports import GateDecision, Report

logger = logging.getLogger(__name__)


class GateEvaluator:
    """Turns a parsed report into a PROCEED / stop decision.

    PROCEED is true iff every tracked counter is exactly zero. There are
    no thresholds and no partial credit.
    """

    def __init__(self, tracked_counters: Sequence[str] | None = None) -> None:
        self._tracked = list(tracked_counters or DEFAULT_TRACKED_COUNTERS)

    @property
    def tracked_counters(self) -> list[str]:
        return list(self._tracked)

    def evaluate(self, report: Report) -> GateDecision:
        counters = {name: report.count(name) for name in self._tracked}
        failing = {name: value for name, value in counters.items() if value != 0}
        decision = GateDecision(
            proceed=not failing,
            revision=report.revision,
            counters=counters,
            failing_counters=failing,
        )
        for name, value in counters.items():
            logger.info("%s: %d", name, value)
        if decision.proceed:
            logger.info("Gate passed for %s", report.revision or report.source)
        else:
            logger.error(
                "Gate failed for %s: %s",
                report.revision or report.source,
                ", ".join(f"{k}={v}" for k, v in failing.items()),
            )
        return decision
