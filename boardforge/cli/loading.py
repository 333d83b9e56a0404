"""Shared CLI helpers: finding the pipeline configuration, logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from boardforge.models.config import PipelineConfig, default_kicad_config

CONFIG_FILE = "boardforge.toml"


def configure_logging(level: str, console: Console | None = None) -> None:
    """Route every ``boardforge.*`` logger through a RichHandler."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def load_pipeline_config(
    config_path: Path | None, project: str | None, workspace: Path
) -> PipelineConfig:
    """Resolve the pipeline configuration for a command.

    An explicit ``--config`` wins, then ``boardforge.toml`` in the
    workspace, then the built-in KiCad pipeline for ``--project``.
    """
    if config_path is not None:
        if not config_path.is_file():
            raise typer.BadParameter(f"{config_path} does not exist", param_hint="--config")
        return PipelineConfig.from_toml(config_path)
    candidate = workspace / CONFIG_FILE
    if candidate.is_file():
        return PipelineConfig.from_toml(candidate)
    if project:
        return default_kicad_config(project)
    raise typer.BadParameter(
        f"No {CONFIG_FILE} in {workspace}; pass --config or --project",
        param_hint="--project",
    )
