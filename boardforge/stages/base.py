"""Abstract base stage with enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only
``execute()``. The ``run_stage()`` wrapper is **not overridable**; it
logs, times and hashes every stage run the same way and packs the result
into a ``StageResult`` the scheduler understands.

Stages never change their own state. They raise, and the scheduler turns
the exception into FAILED (or SKIPPED for ``StageNotRun``).
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, final

from pydantic import BaseModel, ConfigDict

from boardforge.core.artifact_store import ArtifactStore
from boardforge.core.hasher import content_address
from boardforge.core.tool_runner import ToolRunner, render, render_command
from boardforge.models.artifacts import ArtifactBundle
from boardforge.models.config import PipelineConfig
from boardforge.models.release import ReleaseRecord
from boardforge.models.reports import GateDecision
from boardforge.models.revision import Revision, TriggerEvent
from boardforge.models.tools import ToolInvocation, ToolResult

logger = logging.getLogger(__name__)


class StageResult(BaseModel):
    """What a finished stage hands back to the scheduler."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    output: dict[str, Any] = {}
    output_hash: str = ""
    duration_seconds: float = 0.0
    gate_decision: GateDecision | None = None
    bundle: ArtifactBundle | None = None
    release: ReleaseRecord | None = None


@dataclass
class StageContext:
    """Run-wide inputs for one stage execution.

    ``runner`` already records every tool result into the run ledger
    under this stage. ``gate_decision`` is the one recorded for the run,
    or ``None`` if no gate stage has finished.
    """

    run_id: str
    stage_id: str
    trigger: TriggerEvent
    config: PipelineConfig
    store: ArtifactStore
    runner: ToolRunner
    workspace: Path
    work_dir: Path
    max_parallel_tools: int = 8
    gate_decision: GateDecision | None = None
    prior_results: Mapping[str, StageResult] = field(default_factory=dict)

    @property
    def revision(self) -> Revision:
        return self.trigger.revision

    @property
    def output_dir(self) -> Path:
        return self.work_dir / self.config.export.output_root

    def substitutions(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Trigger slots plus project variables; ``extra`` wins on clashes."""
        subs = {
            **self.config.variables,
            "PROJECT_NAME": self.config.project_name,
            "OUTPUT_DIR": str(self.output_dir),
            **self.trigger.substitutions(),
        }
        if extra:
            subs.update(extra)
        return subs

    def resolve(self, template: str, extra: Mapping[str, str] | None = None) -> Path:
        """Render a declared output path; relative paths are under the workspace."""
        path = Path(render(template, self.substitutions(extra)))
        return path if path.is_absolute() else self.workspace / path

    def run_tool(
        self, invocation: ToolInvocation, extra: Mapping[str, str] | None = None
    ) -> ToolResult:
        self._prepare_outputs([invocation], extra)
        return self.runner.run(invocation, self.substitutions(extra), cwd=self.workspace)

    def run_tools(
        self,
        invocations: Sequence[ToolInvocation],
        extra: Mapping[str, str] | None = None,
    ) -> list[ToolResult]:
        """Run independent invocations concurrently and wait for all of them.

        Templates are all rendered up front, so a ``ConfigurationError``
        surfaces before any tool starts. If several tools fail, the first
        failure in invocation order is raised once every tool has ended.
        """
        subs = self.substitutions(extra)
        for invocation in invocations:
            render_command(invocation.command, subs)
        self._prepare_outputs(invocations, extra)

        workers = max(1, min(self.max_parallel_tools, len(invocations)))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"{self.stage_id}-tool"
        ) as pool:
            futures = [
                pool.submit(self.runner.run, invocation, subs, cwd=self.workspace)
                for invocation in invocations
            ]
        results: list[ToolResult] = []
        first_error: BaseException | None = None
        for future in futures:
            exc = future.exception()
            if exc is not None:
                first_error = first_error or exc
                continue
            results.append(future.result())
        if first_error is not None:
            raise first_error
        return results

    def _prepare_outputs(
        self,
        invocations: Sequence[ToolInvocation],
        extra: Mapping[str, str] | None,
    ) -> None:
        """Create the directories declared outputs will be written into."""
        for invocation in invocations:
            for template in invocation.outputs:
                path = self.resolve(template, extra)
                target = path if template.endswith("/") else path.parent
                target.mkdir(parents=True, exist_ok=True)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class BaseStage(abc.ABC):
    """Abstract base for all pipeline stages.

    Subclasses **must** implement:
        * ``stage_id``     — matches a ``StageDefinition``.
        * ``display_name`` — human-readable name for logs and the CLI.
        * ``execute(context)`` — the stage's core logic.

    Subclasses **may** set:
        * ``is_gate`` — ``True`` for the stage whose decision gates the run.

    ``execute`` returns a dict; the keys ``gate_decision``, ``bundle`` and
    ``release`` are lifted into the ``StageResult``.

    Subclasses **must not** override ``run_stage()``.
    """

    is_gate: ClassVar[bool] = False

    @property
    @abc.abstractmethod
    def stage_id(self) -> str:
        ...

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        ...

    @abc.abstractmethod
    def execute(self, context: StageContext) -> dict[str, Any]:
        ...

    @final
    def run_stage(self, context: StageContext) -> StageResult:
        """Execute the stage and package its result.  **Do not override.**"""
        logger.info(
            "%s [%s] starting for %s", self.display_name, self.stage_id, context.revision
        )
        start = time.monotonic()
        try:
            raw = self.execute(context)
        except Exception as exc:
            logger.error(
                "%s [%s] failed: %s", self.display_name, self.stage_id, exc
            )
            raise

        gate_decision = raw.pop("gate_decision", None)
        bundle = raw.pop("bundle", None)
        release = raw.pop("release", None)
        output = _jsonable(raw)
        output_hash = content_address(
            {
                "stage_id": self.stage_id,
                "output": output,
                "gate_decision": _jsonable(gate_decision),
                "bundle": bundle.bundle_digest if bundle else None,
                "release": release.tag.label if release else None,
            }
        )
        duration = time.monotonic() - start
        logger.info(
            "%s [%s] finished in %.2fs output=%s",
            self.display_name,
            self.stage_id,
            duration,
            output_hash[:19],
        )
        return StageResult(
            stage_id=self.stage_id,
            output=output,
            output_hash=output_hash,
            duration_seconds=duration,
            gate_decision=gate_decision,
            bundle=bundle,
            release=release,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} stage_id={self.stage_id!r}>"
