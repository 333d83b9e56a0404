"""Shared test fixtures for boardforge."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from boardforge.config import ForgeSettings
from boardforge.core.artifact_store import ArtifactStore
from boardforge.core.prerequisite_graph import PrerequisiteGraph
from boardforge.core.run_ledger import RunLedger
from boardforge.core.stage_machine import StageMachine
from boardforge.models.config import (
    AssetRule,
    ExportConfig,
    PipelineConfig,
    PostprocessConfig,
    PreviewImage,
    PublishConfig,
    ValidationConfig,
)
from boardforge.models.revision import Revision, TriggerEvent
from boardforge.models.stages import DEFAULT_STAGE_DEFINITIONS
from boardforge.models.tools import ReportFormat, ToolInvocation

LONG_SHA = "abc1234" + "0" * 33


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ArtifactStore:
    """Provide a fresh ArtifactStore in a temp directory."""
    return ArtifactStore(tmp_dir / "artifacts")


@pytest.fixture
def graph() -> PrerequisiteGraph:
    """Provide a PrerequisiteGraph with the default pipeline stages."""
    return PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def stage_machine(ledger: RunLedger, graph: PrerequisiteGraph) -> StageMachine:
    """Provide a StageMachine wired to test ledger and graph."""
    return StageMachine(ledger, graph)


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "bf-test-run-001"


@pytest.fixture
def revision() -> Revision:
    return Revision.from_sha(LONG_SHA)


@pytest.fixture
def trigger() -> TriggerEvent:
    return TriggerEvent.from_sha(LONG_SHA, "refs/heads/main")


@pytest.fixture
def forge_settings(tmp_dir: Path) -> ForgeSettings:
    """Settings with every state path inside the temp directory."""
    state = tmp_dir / "state"
    return ForgeSettings(
        ledger_path=state / "ledger.db",
        store_path=state / "artifacts",
        work_path=state / "work",
        tags_path=state / "tags",
        releases_path=state / "releases",
        images_path=state / "images",
        tool_timeout_seconds=60,
        tag_backend="file",
        publisher="local",
        image_host="local",
    )


@pytest.fixture
def workspace(tmp_dir: Path) -> Path:
    path = tmp_dir / "project"
    path.mkdir()
    return path


# ---------------------------------------------------------------------------
# Fake tools: real subprocesses running the current interpreter
# ---------------------------------------------------------------------------


def python_tool(name: str, script: str, *args: str, **fields: Any) -> ToolInvocation:
    """A ToolInvocation that runs ``script`` with ``sys.executable -c``.

    Braces in the script are escaped; only ``args`` are templates.
    """
    literal = script.replace("{", "{{").replace("}", "}}")
    return ToolInvocation(name=name, command=[sys.executable, "-c", literal, *args], **fields)


@pytest.fixture
def make_tool() -> Callable[..., ToolInvocation]:
    return python_tool


_WRITE_DRC = """
import json, sys
path, violations = sys.argv[1], int(sys.argv[2])
report = {
    "violations": [
        {"severity": "error", "description": "Clearance violation",
         "items": [{"description": "Track [GND]"}, {"description": "Pad 1 [VCC]"}]}
    ] * violations,
    "unconnected_items": [],
    "schematic_parity": [],
}
with open(path, "w") as fh:
    json.dump(report, fh)
print(f"Found {violations} violations")
"""

_WRITE_FILES = """
import os, sys
out = sys.argv[1]
os.makedirs(out, exist_ok=True)
for name in sys.argv[2:]:
    with open(os.path.join(out, name), "w") as fh:
        fh.write(name + "\\n")
"""

_WRITE_ONE = """
import os, sys
path, content = sys.argv[1], sys.argv[2]
os.makedirs(os.path.dirname(path), exist_ok=True)
with open(path, "wb") as fh:
    fh.write(content.encode())
"""

_WRITE_STAMPED = """
import os, sys, time
out = sys.argv[1]
os.makedirs(out, exist_ok=True)
for name in sys.argv[2:]:
    with open(os.path.join(out, name), "w") as fh:
        fh.write(f"%TF.CreationDate,{time.time_ns()}*%\\n")
"""

_POSTPROCESS = """
import os, shutil, sys
src, dst = sys.argv[1], sys.argv[2]
for name in sorted(os.listdir(src)):
    shutil.copy(os.path.join(src, name), os.path.join(dst, "jlc-" + name))
"""


def fake_pipeline_config(
    violations: int = 0, *, project: str = "board", stamped: bool = False
) -> PipelineConfig:
    """A small pipeline shaped like the KiCad one, built from fake tools.

    With ``stamped`` the Gerber writer embeds a creation time, as KiCad
    does, so no two runs export the same bytes.
    """
    report = "{OUTPUT_DIR}/drc/{PROJECT_NAME}-drc-report-error.json"
    return PipelineConfig(
        project_name=project,
        validation=ValidationConfig(
            checks=[
                python_tool(
                    "drc-error",
                    _WRITE_DRC,
                    report,
                    str(violations),
                    outputs=[report],
                    report_format=ReportFormat.JSON,
                ),
                python_tool(
                    "drc-all",
                    "print('Found 0 unconnected items')",
                    gating=False,
                ),
            ]
        ),
        export=ExportConfig(
            invocations=[
                python_tool(
                    "gerbers",
                    _WRITE_STAMPED if stamped else _WRITE_FILES,
                    "{OUTPUT_DIR}/gerber",
                    "board-F_Cu.gbr",
                    "board-B_Cu.gbr",
                    outputs=["{OUTPUT_DIR}/gerber/"],
                    category="fabrication",
                ),
                python_tool(
                    "bom",
                    _WRITE_ONE,
                    "{OUTPUT_DIR}/bom/{PROJECT_NAME}-bom.csv",
                    "Refs,Value\nR1,10k\n",
                    outputs=["{OUTPUT_DIR}/bom/{PROJECT_NAME}-bom.csv"],
                    category="bom",
                ),
                python_tool(
                    "png-top",
                    _WRITE_ONE,
                    "{OUTPUT_DIR}/png/{PROJECT_NAME}-top.png",
                    "PNG-top-{SHORT_SHA}",
                    outputs=["{OUTPUT_DIR}/png/{PROJECT_NAME}-top.png"],
                    category="preview-image",
                    phase=1,
                ),
            ]
        ),
        publish=PublishConfig(
            previews=[
                PreviewImage(name="png/{PROJECT_NAME}-top.png", title="Top Layer"),
                PreviewImage(name="png/{PROJECT_NAME}-bottom.png", title="Bottom Layer"),
            ],
            assets=[
                AssetRule(category="fabrication", label="Gerber"),
                AssetRule(category="bom", label="BOM", archive=False),
            ],
        ),
        postprocess=PostprocessConfig(
            input_category="fabrication",
            output_category="jlc-gerber",
            invocations=[
                python_tool("jlc-gerber", _POSTPROCESS, "{INPUT_DIR}", "{OUTPUT_DIR}"),
            ],
        ),
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return fake_pipeline_config()


def drc_json(violations: int = 0, unconnected: int = 0, parity: int = 0) -> str:
    """A checker report document with the given counts."""
    entry = {"severity": "error", "description": "x", "items": [{"description": "item"}]}
    return json.dumps(
        {
            "violations": [entry] * violations,
            "unconnected_items": [entry] * unconnected,
            "schematic_parity": [entry] * parity,
        }
    )


@pytest.fixture
def make_pipeline_config() -> Callable[..., PipelineConfig]:
    return fake_pipeline_config


@pytest.fixture
def make_drc_report() -> Callable[..., str]:
    return drc_json
