"""``boardforge run`` — execute the pipeline for one commit.

Bound to the trigger event: the revision and branch default to the
``GITHUB_SHA`` / ``GITHUB_REF`` variables a CI runner exports.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from boardforge.cli.loading import load_pipeline_config
from boardforge.config import ForgeSettings
from boardforge.core.orchestrator import Orchestrator
from boardforge.core.tool_runner import ConfigurationError
from boardforge.models.revision import TriggerEvent
from boardforge.monitor.renderer import RunRenderer

console = Console()


def run_cmd(
    sha: str = typer.Option(
        ...,
        "--sha",
        envvar="GITHUB_SHA",
        help="Full commit id the run is bound to.",
    ),
    branch: str = typer.Option(
        "main",
        "--branch",
        envvar="GITHUB_REF",
        help="Branch name (a refs/heads/ prefix is stripped).",
    ),
    project: str = typer.Option(
        None,
        "--project",
        "-p",
        help="KiCad project name; selects the built-in pipeline.",
    ),
    config_path: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="boardforge.toml or pyproject.toml with [tool.boardforge].",
    ),
    workspace: Path = typer.Option(
        Path("."),
        "--workspace",
        "-w",
        help="Checked-out project directory the tools run in.",
    ),
    local: bool = typer.Option(
        False,
        "--local",
        help="Mark the run as a local build (IS_CI=0).",
    ),
    fail_on_gate: bool = typer.Option(
        False,
        "--fail-on-gate",
        help="Exit non-zero when the gate says stop.",
    ),
) -> None:
    """Run validate, export, publish and post-process for a revision."""
    config = load_pipeline_config(config_path, project, workspace)
    trigger = TriggerEvent.from_sha(sha, branch, is_ci=not local)

    try:
        orchestrator = Orchestrator(config, settings=ForgeSettings(), workspace=workspace)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=2)

    result = orchestrator.run(trigger)
    RunRenderer(console=console).print_result(result, orchestrator.graph)

    if result.failed_stages:
        raise typer.Exit(code=1)
    if fail_on_gate and not result.gate_passed:
        raise typer.Exit(code=1)
