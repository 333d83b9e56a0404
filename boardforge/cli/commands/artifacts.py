"""``boardforge artifacts`` — inspect and move a revision's artifacts.

``export`` and ``import`` are the push/pull seam between CI workers: the
export stage's worker exports an archive, the publish worker imports it.
Without ``--run`` both ``list`` and ``export`` use the most recently
sealed run of the commit.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from boardforge.config import ForgeSettings
from boardforge.core.artifact_store import ArtifactIntegrityError, ArtifactStore
from boardforge.models.revision import Revision

console = Console()

artifacts_app = typer.Typer(
    name="artifacts",
    help="Inspect, export and import revision artifacts.",
    no_args_is_help=True,
)


def _store() -> ArtifactStore:
    return ArtifactStore(ForgeSettings().store_path)


def _pick_run(store: ArtifactStore, revision: Revision, run: str | None) -> str | None:
    """The requested run, or the current sealed one; report when there is neither."""
    if run is not None:
        return run
    current = store.current_run(revision)
    if current is None:
        runs = store.runs(revision)
        if runs:
            console.print(
                f"[yellow]No sealed run for {revision.short}.[/yellow] "
                f"Unsealed: {', '.join(runs)}"
            )
        else:
            console.print(f"[dim]No artifacts for {revision.short}.[/dim]")
    return current


@artifacts_app.command(name="list", help="List the categories stored for a commit.")
def list_cmd(
    sha: str = typer.Argument(..., help="Full commit id."),
    run: str = typer.Option(None, "--run", help="Run id (default: latest sealed)."),
) -> None:
    store = _store()
    revision = Revision.from_sha(sha)
    run_id = _pick_run(store, revision, run)
    if run_id is None:
        return
    categories = sorted(store.list(revision, run_id=run_id))
    if not categories:
        console.print(f"[dim]No artifacts for {revision.short} in {run_id}.[/dim]")
        return

    sealed = (
        "[green]sealed[/green]"
        if store.is_sealed(revision, run_id=run_id)
        else "[yellow]open[/yellow]"
    )
    table = Table(title=f"Artifacts for {revision.short} in {run_id} ({sealed})")
    table.add_column("Category", style="cyan")
    table.add_column("Files", justify="right")
    table.add_column("Bytes", justify="right")
    for category in categories:
        refs = store.manifest(revision, category, run_id=run_id).artifacts
        table.add_row(category, str(len(refs)), str(sum(r.size_bytes for r in refs)))
    console.print(table)


@artifacts_app.command(name="export", help="Write a commit's artifacts to a zip archive.")
def export_cmd(
    sha: str = typer.Argument(..., help="Full commit id."),
    archive: Path = typer.Argument(..., help="Destination .zip path."),
    run: str = typer.Option(None, "--run", help="Run id (default: latest sealed)."),
) -> None:
    revision = Revision.from_sha(sha)
    store = _store()
    run_id = _pick_run(store, revision, run)
    if run_id is None or not store.list(revision, run_id=run_id):
        console.print(f"[bold red]No artifacts for {revision.short}.[/bold red]")
        raise typer.Exit(code=1)
    store.export_archive(revision, archive, run_id=run_id)
    console.print(f"Exported {revision.short} ({run_id}) to {archive}")


@artifacts_app.command(name="import", help="Load an archive written by 'export'.")
def import_cmd(archive: Path = typer.Argument(..., help="Archive path.")) -> None:
    if not archive.is_file():
        console.print(f"[bold red]Archive not found:[/bold red] {archive}")
        raise typer.Exit(code=1)
    try:
        revision, run_id = _store().import_archive(archive)
    except ArtifactIntegrityError as exc:
        console.print(f"[bold red]Integrity error:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"Imported {revision.short} ({run_id})")
