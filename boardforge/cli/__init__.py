"""boardforge CLI — Typer-based command-line interface.

Provides the ``boardforge`` command with subcommands for running the
pipeline, inspecting recorded runs and artifacts, computing the next
release tag and verifying the ledger.

All output uses Rich for formatted terminal display.
"""
