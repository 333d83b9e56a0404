"""Stage 4 — Post-process Fabrication Files.

Pulls one exported category out of the artifact store into a scratch
input directory, runs the post-processing tools over it and stores what
they write to the scratch output directory as a new category. Depends on
export only, so it runs alongside the publish stage.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import PurePosixPath
from typing import Any, ClassVar

from boardforge.models.stages import POSTPROCESS
from boardforge.stages.base import BaseStage, StageContext
from boardforge.stages.errors import MissingOutputError
from boardforge.stages.s2_export import collect_files

logger = logging.getLogger(__name__)


class PostprocessStage(BaseStage):
    """Stage 4: Post-process — third-party rewriting of exported files."""

    is_gate: ClassVar[bool] = False

    @property
    def stage_id(self) -> str:
        return POSTPROCESS

    @property
    def display_name(self) -> str:
        return "Post-process Fabrication Files"

    def execute(self, context: StageContext) -> dict[str, Any]:
        settings = context.config.postprocess
        if not settings.invocations:
            logger.info("No post-processors configured; nothing to do")
            return {"category": None, "files": []}
        # Raises StageNotRun when this run's export never sealed the revision.
        blobs = context.store.get(
            context.revision, settings.input_category, run_id=context.run_id
        )

        scratch = context.work_dir / "postprocess"
        if scratch.exists():
            shutil.rmtree(scratch)
        input_dir = scratch / "input"
        output_dir = scratch / "output"
        input_dir.mkdir(parents=True)
        output_dir.mkdir(parents=True)

        # Post-processors take a flat directory of fabrication files.
        for name, data in blobs.items():
            (input_dir / PurePosixPath(name).name).write_bytes(data)

        extra = {"INPUT_DIR": str(input_dir), "OUTPUT_DIR": str(output_dir)}
        for invocation in settings.invocations:
            context.run_tool(invocation, extra)

        produced = collect_files(output_dir, output_dir)
        if not produced:
            raise MissingOutputError(
                f"Post-processing wrote nothing to {output_dir}"
            )
        context.store.put(
            context.revision, settings.output_category, produced, run_id=context.run_id
        )
        return {"category": settings.output_category, "files": sorted(produced)}
