"""Runtime configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
BOARDFORGE_* environment variables. What the pipeline *does* (tools,
categories, release assets) lives in ``PipelineConfig``; this module only
covers where it keeps state and which backends it talks to.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export BOARDFORGE_LOG_LEVEL=DEBUG
        export BOARDFORGE_TAG_BACKEND=github
        export BOARDFORGE_GITHUB_REPOSITORY=acme/widget-board

    Or via .env file::

        BOARDFORGE_PUBLISHER=github
        BOARDFORGE_IMAGE_HOST=imgur
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BOARDFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"

    # Storage paths
    ledger_path: Path = Path(".boardforge/ledger.db")
    store_path: Path = Path(".boardforge/artifacts")
    work_path: Path = Path(".boardforge/work")
    tags_path: Path = Path(".boardforge/tags")
    releases_path: Path = Path(".boardforge/releases")
    images_path: Path = Path(".boardforge/images")

    # Execution
    tool_timeout_seconds: float | None = 900.0
    max_workers: int = 4
    max_parallel_tools: int = 8
    tag_retry_limit: int = 3

    # Backends
    tag_backend: Literal["file", "git", "github"] = "file"
    publisher: Literal["local", "github"] = "local"
    image_host: Literal["none", "local", "imgur"] = "local"
    git_remote: str = ""  # empty: reserve tags in the local repository only

    # Credentials, set via BOARDFORGE_GITHUB_TOKEN etc.
    github_repository: str = ""
    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    imgur_client_id: str = ""
