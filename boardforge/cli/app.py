"""Main Typer application — imports and registers all CLI commands.

Entry point: ``boardforge`` (configured via pyproject.toml scripts).

Commands: run, status, next-tag, artifacts, verify.
"""

from __future__ import annotations

import typer

from boardforge.cli.commands.artifacts import artifacts_app
from boardforge.cli.commands.next_tag import next_tag_cmd
from boardforge.cli.commands.run import run_cmd
from boardforge.cli.commands.status import status_cmd
from boardforge.cli.commands.verify import verify_cmd
from boardforge.cli.loading import configure_logging
from boardforge.config import ForgeSettings

app = typer.Typer(
    name="boardforge",
    help="boardforge: gated CI pipeline for hardware design projects.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Override BOARDFORGE_LOG_LEVEL for this invocation.",
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or ForgeSettings().log_level)


# Register subcommands
app.command(name="run", help="Run the pipeline for a commit.")(run_cmd)
app.command(name="status", help="Show a recorded run.")(status_cmd)
app.command(name="next-tag", help="Show or reserve the next release tag.")(next_tag_cmd)
app.command(name="verify", help="Verify ledger hash chains.")(verify_cmd)
app.add_typer(artifacts_app, name="artifacts")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
