"""``boardforge next-tag`` — show (or reserve) the next release tag."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from boardforge.config import ForgeSettings
from boardforge.core.orchestrator import build_tag_history, enforce_backend_constraints
from boardforge.core.tag_allocator import TagAllocator, TagConflict
from boardforge.core.tool_runner import ConfigurationError, ToolRunner
from boardforge.models.config import PipelineConfig

console = Console()


def next_tag_cmd(
    prefix: str = typer.Option(None, "--prefix", help="Tag prefix (default from config)."),
    width: int = typer.Option(None, "--width", help="Zero-padding width."),
    config_path: Path = typer.Option(None, "--config", "-c", help="Pipeline config file."),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Git checkout."),
    reserve: str = typer.Option(
        None,
        "--reserve",
        metavar="SHA",
        help="Reserve the tag for this commit instead of only printing it.",
    ),
) -> None:
    """Print the tag the next release would get."""
    settings = ForgeSettings()
    tags = PipelineConfig.from_toml(config_path).tags if config_path else PipelineConfig().tags
    try:
        enforce_backend_constraints(settings)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=2)

    history = build_tag_history(
        settings, workspace, ToolRunner(timeout_seconds=settings.tool_timeout_seconds)
    )
    allocator = TagAllocator(
        prefix if prefix is not None else tags.prefix,
        width if width is not None else tags.width,
        history=history,
        max_attempts=settings.tag_retry_limit,
    )

    if reserve is None:
        console.print(allocator.next_tag(history.labels()).label)
        return
    try:
        tag = allocator.allocate(target=reserve)
    except TagConflict as exc:
        console.print(f"[bold red]Tag conflict:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(tag.label)
