"""``boardforge verify [RUN_ID]`` — check ledger hash chains."""

from __future__ import annotations

import typer
from rich.console import Console

from boardforge.config import ForgeSettings
from boardforge.core.run_ledger import LedgerIntegrityError, RunLedger
from boardforge.monitor.renderer import RunRenderer

console = Console()


def verify_cmd(
    run_id: str = typer.Argument(None, help="Run to verify; every run when omitted."),
) -> None:
    """Verify the hash chain of one run or of every run in the ledger."""
    settings = ForgeSettings()
    if not settings.ledger_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {settings.ledger_path}")
        raise typer.Exit(code=1)

    ledger = RunLedger(settings.ledger_path)
    renderer = RunRenderer(console=console)
    run_ids = [run_id] if run_id else ledger.get_all_run_ids()

    broken = False
    for rid in run_ids:
        try:
            valid = ledger.verify_chain(rid)
        except LedgerIntegrityError as exc:
            console.print(f"[red]{exc}[/red]")
            valid = False
        renderer.print_chain_verification(rid, valid)
        broken = broken or not valid

    if broken:
        raise typer.Exit(code=1)
