"""Gate report models — parsed checker output and the resulting decision."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from boardforge.models.revision import Revision


class Finding(BaseModel):
    """A single checker result (one DRC violation, unconnected item, ...)."""

    model_config = ConfigDict(frozen=True)

    counter: str  # which counter this finding contributes to
    severity: str = ""
    description: str = ""
    items: list[str] = []  # descriptions of the involved board items


class Report(BaseModel):
    """Output of one validation tool run: named counters plus findings."""

    model_config = ConfigDict(frozen=True)

    counters: dict[str, int] = {}
    findings: list[Finding] = []
    revision: Revision | None = None
    source: str = ""  # name of the invocation that produced it

    def count(self, name: str) -> int:
        """Return a counter's value; absent counters are zero."""
        return self.counters.get(name, 0)

    @classmethod
    def combine(cls, reports: list[Report], *, source: str = "combined") -> Report:
        """Sum counters and concatenate findings across reports."""
        counters: dict[str, int] = {}
        findings: list[Finding] = []
        revision: Revision | None = None
        for report in reports:
            for name, value in report.counters.items():
                counters[name] = counters.get(name, 0) + value
            findings.extend(report.findings)
            revision = revision or report.revision
        return cls(
            counters=counters,
            findings=findings,
            revision=revision,
            source=source,
        )


class GateDecision(BaseModel):
    """PROCEED flag plus the revision and counters that produced it.

    Computed once per run; downstream stages read it, never recompute it.
    """

    model_config = ConfigDict(frozen=True)

    proceed: bool
    revision: Revision | None = None
    counters: dict[str, int] = {}
    failing_counters: dict[str, int] = {}
    decided_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
