"""Rich terminal renderer for runs.

Turns a ``RunResult`` (just finished, in-process) or a ``RunSnapshot``
(read back from the ledger) into a Panel with a color-coded stage table.

Color scheme
------------
- green  : SUCCEEDED
- red    : FAILED
- yellow : RUNNING
- cyan   : SKIPPED
- dim    : PENDING
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from boardforge.models.reports import GateDecision
from boardforge.models.stages import StageState

if TYPE_CHECKING:
    from boardforge.core.prerequisite_graph import PrerequisiteGraph
    from boardforge.core.scheduler import RunResult
    from boardforge.monitor.projection import RunSnapshot


_STATE_LABELS: dict[StageState, str] = {
    StageState.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.SKIPPED: "[cyan]SKIPPED[/cyan]",
    StageState.PENDING: "[dim]PENDING[/dim]",
}


def _gate_summary(decision: GateDecision | None) -> str:
    if decision is None:
        return "[dim]not decided[/dim]"
    counters = ", ".join(f"{k}={v}" for k, v in decision.counters.items())
    if decision.proceed:
        return f"[green]PROCEED[/green] ({counters})"
    return f"[bold red]STOP[/bold red] ({counters})"


class RunRenderer:
    """Renders runs as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Renderables
    # ------------------------------------------------------------------

    def render_result(self, result: RunResult, graph: PrerequisiteGraph) -> Panel:
        table = self._stage_table()
        for i, stage_id in enumerate(graph.stage_ids):
            state = result.states[stage_id]
            detail = result.errors.get(stage_id) or result.skip_reasons.get(stage_id, "")
            stage_result = result.results.get(stage_id)
            duration = f"{stage_result.duration_seconds:.1f}s" if stage_result else "-"
            table.add_row(
                str(i),
                graph.get_stage_definition(stage_id).display_name,
                _STATE_LABELS[state],
                detail or "[dim]-[/dim]",
                duration,
            )

        summary = [
            f"[bold]Run:[/bold] {result.run_id}",
            f"[bold]Revision:[/bold] {result.trigger.revision.short} ({result.trigger.branch})",
            f"[bold]Gate:[/bold] {_gate_summary(result.gate_decision)}",
        ]
        if result.release is not None:
            summary.append(f"[bold]Release:[/bold] {result.release.tag.label}")
        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary))),
            title="[bold]boardforge run[/bold]",
            border_style="red" if result.failed_stages else "blue",
            padding=(1, 2),
        )

    def render_snapshot(self, snapshot: RunSnapshot) -> Panel:
        table = self._stage_table()
        for i, stage in enumerate(snapshot.stages):
            detail = stage.detail
            if stage.failed_tools:
                detail = f"{detail} [red]failed: {', '.join(stage.failed_tools)}[/red]".strip()
            entered = stage.entered_at.strftime("%H:%M:%S") if stage.entered_at else "-"
            table.add_row(
                str(i),
                stage.display_name,
                _STATE_LABELS[stage.state],
                detail or "[dim]-[/dim]",
                f"{stage.tool_runs} tool(s) {entered}",
            )

        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Revision:[/bold] {snapshot.revision[:7] or '-'}",
            f"[bold]Gate:[/bold] {_gate_summary(snapshot.gate_decision)}",
            f"[bold]Chain:[/bold] {chain}",
        ]
        if snapshot.release_tag:
            summary.append(f"[bold]Release:[/bold] {snapshot.release_tag}")
        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary))),
            title="[bold]boardforge status[/bold]",
            border_style="blue",
            padding=(1, 2),
        )

    @staticmethod
    def _stage_table() -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=25)
        table.add_column("State", min_width=11, justify="center")
        table.add_column("Details", min_width=20)
        table.add_column("Time", justify="right")
        return table

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_result(self, result: RunResult, graph: PrerequisiteGraph) -> None:
        self.console.print(self.render_result(result, graph))

    def print_snapshot(self, snapshot: RunSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        """Print a chain verification result."""
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
