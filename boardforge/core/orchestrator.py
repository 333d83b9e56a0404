"""Pipeline orchestrator — wires settings and pipeline config into a run.

The Orchestrator builds the RunLedger, ArtifactStore, PrerequisiteGraph,
StageMachine, ToolRunner, TagAllocator and the publishing backends, then
hands one trigger event at a time to the StageScheduler.
"""

from __future__ import annotations

import logging
from pathlib import Path

from boardforge.config import ForgeSettings
from boardforge.core.artifact_store import ArtifactStore
from boardforge.core.gate import GateEvaluator
from boardforge.core.prerequisite_graph import PrerequisiteGraph
from boardforge.core.report_parser import ReportParser
from boardforge.core.run_ledger import RunLedger
from boardforge.core.scheduler import RunEnvironment, RunResult, StageScheduler, new_run_id
from boardforge.core.stage_machine import StageMachine
from boardforge.core.tag_allocator import (
    FileTagHistory,
    GitTagHistory,
    TagAllocator,
    TagHistory,
)
from boardforge.core.tool_runner import ConfigurationError, ToolRunner
from boardforge.models.config import PipelineConfig
from boardforge.models.ledger import LedgerEntry
from boardforge.models.revision import TriggerEvent
from boardforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    EXPORT,
    POSTPROCESS,
    PUBLISH,
    VALIDATE,
    StageDefinition,
    StageState,
)
from boardforge.publishing.base import ImageHost, ReleasePublisher
from boardforge.publishing.github import GitHubClient, GitHubReleasePublisher, GitHubTagHistory
from boardforge.publishing.imgur import ImgurImageHost
from boardforge.publishing.local import LocalImageHost, LocalReleasePublisher
from boardforge.stages import (
    BaseStage,
    ExportStage,
    PostprocessStage,
    PublishStage,
    ValidationStage,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backend construction
# ---------------------------------------------------------------------------


def enforce_backend_constraints(settings: ForgeSettings) -> None:
    """Fail fast when a selected backend lacks its credentials.

    Raises ``ConfigurationError``; nothing has run at that point.
    """
    problems = []
    uses_github = settings.tag_backend == "github" or settings.publisher == "github"
    if uses_github and not settings.github_repository:
        problems.append("BOARDFORGE_GITHUB_REPOSITORY is required for GitHub backends")
    if uses_github and not settings.github_token:
        problems.append("BOARDFORGE_GITHUB_TOKEN is required for GitHub backends")
    if settings.image_host == "imgur" and not settings.imgur_client_id:
        problems.append("BOARDFORGE_IMGUR_CLIENT_ID is required for the imgur image host")
    if problems:
        raise ConfigurationError("; ".join(problems))


def _github_client(settings: ForgeSettings) -> GitHubClient:
    return GitHubClient(
        settings.github_repository,
        settings.github_token,
        api_url=settings.github_api_url,
    )


def build_tag_history(
    settings: ForgeSettings, workspace: Path, runner: ToolRunner
) -> TagHistory:
    if settings.tag_backend == "github":
        return GitHubTagHistory(_github_client(settings))
    if settings.tag_backend == "git":
        return GitTagHistory(workspace, remote=settings.git_remote or None, runner=runner)
    return FileTagHistory(settings.tags_path)


def build_publisher(settings: ForgeSettings) -> ReleasePublisher:
    if settings.publisher == "github":
        return GitHubReleasePublisher(_github_client(settings))
    return LocalReleasePublisher(settings.releases_path)


def build_image_host(settings: ForgeSettings) -> ImageHost | None:
    if settings.image_host == "imgur":
        return ImgurImageHost(settings.imgur_client_id)
    if settings.image_host == "local":
        return LocalImageHost(settings.images_path)
    return None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Central pipeline orchestrator.

    Parameters
    ----------
    config:
        What the stages run. Defaults to an empty ``PipelineConfig``.
    settings:
        Where state lives and which backends are used.
    workspace:
        The checked-out project the tools run in (default: cwd).
    tag_history, publisher, image_host, runner:
        Override the backends chosen by ``settings`` (tests, embedding).
    stage_definitions:
        The stage DAG; the standard validate/export/publish/postprocess
        pipeline by default.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        settings: ForgeSettings | None = None,
        workspace: Path | None = None,
        tag_history: TagHistory | None = None,
        publisher: ReleasePublisher | None = None,
        image_host: ImageHost | None = None,
        runner: ToolRunner | None = None,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.settings = settings or ForgeSettings()
        self.workspace = Path(workspace or Path.cwd()).resolve()

        enforce_backend_constraints(self.settings)

        # Core subsystems
        self.ledger = RunLedger(self.settings.ledger_path)
        self.artifact_store = ArtifactStore(self.settings.store_path)
        self.graph = PrerequisiteGraph(stage_definitions or DEFAULT_STAGE_DEFINITIONS)
        self.stage_machine = StageMachine(self.ledger, self.graph)
        self.runner = runner or ToolRunner(
            timeout_seconds=self.settings.tool_timeout_seconds, cwd=self.workspace
        )

        # Release backends
        self.tag_history = tag_history or build_tag_history(
            self.settings, self.workspace, self.runner
        )
        self.allocator = TagAllocator(
            self.config.tags.prefix,
            self.config.tags.width,
            history=self.tag_history,
            max_attempts=self.settings.tag_retry_limit,
        )
        self.publisher = publisher or build_publisher(self.settings)
        self.image_host = image_host if image_host is not None else build_image_host(self.settings)

        self.stages: dict[str, BaseStage] = {
            VALIDATE: ValidationStage(
                ReportParser(),
                GateEvaluator(self.config.validation.tracked_counters),
            ),
            EXPORT: ExportStage(),
            PUBLISH: PublishStage(self.allocator, self.publisher, self.image_host),
            POSTPROCESS: PostprocessStage(),
        }
        self.scheduler = StageScheduler(
            self.stage_machine,
            self.stages,
            self.ledger,
            max_workers=self.settings.max_workers,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run(self, trigger: TriggerEvent, *, run_id: str | None = None) -> RunResult:
        """Execute the full pipeline for one trigger event."""
        run_id = run_id or new_run_id(trigger)
        environment = RunEnvironment(
            config=self.config,
            store=self.artifact_store,
            runner=self.runner,
            workspace=self.workspace,
            work_root=self.settings.work_path.resolve(),
            max_parallel_tools=self.settings.max_parallel_tools,
        )
        return self.scheduler.run(trigger, environment, run_id=run_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_states(self, run_id: str) -> dict[str, StageState]:
        """Return the state of every stage of a run (rebuilt from the ledger)."""
        return self.stage_machine.get_all_states(run_id)

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries of a run."""
        return self.ledger.get_run_entries(run_id)

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity of a run's ledger."""
        return self.ledger.verify_chain(run_id)
