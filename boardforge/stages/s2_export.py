"""Stage 2 — Export Manufacturing Files.

Runs the export invocations phase by phase (invocations sharing a phase
are independent and run concurrently), gathers every declared output
into its artifact category, writes each category once and seals the
revision's bundle.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, ClassVar

from boardforge.core.artifact_store import ArtifactConflict
from boardforge.core.tool_runner import ConfigurationError
from boardforge.models.stages import EXPORT
from boardforge.stages.base import BaseStage, StageContext
from boardforge.stages.errors import MissingOutputError

logger = logging.getLogger(__name__)


def collect_files(path: Path, root: Path) -> dict[str, bytes]:
    """Read a declared output (a file, or every file under a directory).

    Blob names are POSIX paths relative to ``root`` when the file lives
    under it, otherwise the bare file name.
    """
    if path.is_dir():
        files = sorted(p for p in path.rglob("*") if p.is_file())
    elif path.is_file():
        files = [path]
    else:
        raise MissingOutputError(f"Declared output {path} does not exist")

    blobs: dict[str, bytes] = {}
    for file in files:
        try:
            name = file.relative_to(root).as_posix()
        except ValueError:
            name = file.name
        blobs[name] = file.read_bytes()
    return blobs


class ExportStage(BaseStage):
    """Stage 2: Export — produces and seals the revision's artifact bundle."""

    is_gate: ClassVar[bool] = False

    @property
    def stage_id(self) -> str:
        return EXPORT

    @property
    def display_name(self) -> str:
        return "Export Manufacturing Files"

    def execute(self, context: StageContext) -> dict[str, Any]:
        invocations = context.config.export.invocations
        if not invocations:
            raise ConfigurationError("No export invocations configured")
        if context.gate_decision is not None and not context.gate_decision.proceed:
            raise RuntimeError("Gate decision is STOP; refusing to export")

        phases: dict[int, list] = defaultdict(list)
        for invocation in invocations:
            phases[invocation.phase].append(invocation)
        for phase in sorted(phases):
            logger.info("Export phase %d: %d tool(s)", phase, len(phases[phase]))
            context.run_tools(phases[phase])

        categories: dict[str, dict[str, bytes]] = defaultdict(dict)
        for invocation in invocations:
            if invocation.category is None:
                continue
            bucket = categories[invocation.category]
            for template in invocation.outputs:
                for name, data in collect_files(
                    context.resolve(template), context.output_dir
                ).items():
                    if name in bucket and bucket[name] != data:
                        raise ArtifactConflict(
                            f"{invocation.name} produced a different {name!r} "
                            f"in category {invocation.category!r}"
                        )
                    bucket[name] = data

        written = sorted(c for c, blobs in categories.items() if blobs)
        for category in written:
            context.store.put(
                context.revision, category, categories[category], run_id=context.run_id
            )
        bundle = context.store.seal(context.revision, written, run_id=context.run_id)
        return {
            "bundle": bundle,
            "bundle_digest": bundle.bundle_digest,
            "categories": {c: len(refs) for c, refs in bundle.categories.items()},
        }
