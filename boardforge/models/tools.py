"""External tool invocation models.

A ``ToolInvocation`` is configuration: an argv template with ``{NAME}``
placeholders plus the paths it is declared to write. Nothing here runs a
process; see ``boardforge.core.tool_runner``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ReportFormat(str, Enum):
    """How a validation tool's output is parsed."""

    TEXT = "text"
    JSON = "json"


class ToolInvocation(BaseModel):
    """A command template with named substitution parameters."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: list[str]
    outputs: list[str] = []  # declared output paths, templated like command
    category: str | None = None  # artifact category the outputs belong to
    phase: int = 0  # export ordering; same-phase invocations run concurrently
    report_format: ReportFormat = ReportFormat.TEXT
    gating: bool = True  # validation only: does this report feed the gate
    timeout_seconds: float | None = None


class ToolResult(BaseModel):
    """Captured outcome of one tool invocation."""

    model_config = ConfigDict(frozen=True)

    name: str
    argv: list[str]
    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out

    @property
    def captured_output(self) -> str:
        """stdout and stderr joined, the way a CI log shows them."""
        if self.stderr:
            return f"{self.stdout}{self.stderr}"
        return self.stdout
