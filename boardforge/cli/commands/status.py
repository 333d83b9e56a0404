"""``boardforge status [RUN_ID]`` — show a run as recorded in the ledger."""

from __future__ import annotations

import typer
from rich.console import Console

from boardforge.config import ForgeSettings
from boardforge.core.run_ledger import RunLedger
from boardforge.models.revision import Revision
from boardforge.monitor.projection import RunProjection
from boardforge.monitor.renderer import RunRenderer

console = Console()


def status_cmd(
    run_id: str = typer.Argument(
        None,
        help="Run to show; the most recent run when omitted.",
    ),
    sha: str = typer.Option(
        None,
        "--sha",
        help="Show the most recent run for this commit instead.",
    ),
) -> None:
    """Show stage states, gate decision and release of a run."""
    settings = ForgeSettings()
    if not settings.ledger_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {settings.ledger_path}")
        raise typer.Exit(code=1)

    ledger = RunLedger(settings.ledger_path)
    if run_id is None:
        runs = (
            ledger.get_runs_for_revision(Revision.from_sha(sha).long)
            if sha
            else ledger.get_all_run_ids()
        )
        if not runs:
            console.print("[dim]No runs recorded.[/dim]")
            raise typer.Exit(code=1)
        run_id = runs[0]

    try:
        snapshot = RunProjection(ledger).snapshot(run_id)
    except KeyError:
        console.print(f"[bold red]Unknown run:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    RunRenderer(console=console).print_snapshot(snapshot)
