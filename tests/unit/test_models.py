"""Tests for the Pydantic models — immutability, validation, derived values."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from boardforge.core.tool_runner import placeholders
from boardforge.models import (
    DEFAULT_STAGE_DEFINITIONS,
    LedgerEntry,
    PipelineConfig,
    Revision,
    Tag,
    ToolInvocation,
    TriggerEvent,
    default_kicad_config,
)


class TestRevision:
    def test_from_sha(self):
        rev = Revision.from_sha("  abc1234def5678  ")
        assert rev.short == "abc1234"
        assert rev.long == "abc1234def5678"
        assert str(rev) == "abc1234"

    def test_short_must_prefix_long(self):
        with pytest.raises(ValidationError):
            Revision(short="fff", long="abc1234")

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            Revision.from_sha("")

    def test_frozen(self):
        rev = Revision.from_sha("abc1234")
        with pytest.raises(ValidationError):
            rev.short = "x"  # type: ignore[misc]


class TestTriggerEvent:
    def test_strips_ref_prefix(self):
        trigger = TriggerEvent.from_sha("abc1234ffff", "refs/heads/feature/x")
        assert trigger.branch == "feature/x"

    def test_substitutions(self):
        trigger = TriggerEvent.from_sha("abc1234ffff", "main", is_ci=False)
        assert trigger.substitutions() == {
            "BRANCH": "main",
            "SHORT_SHA": "abc1234",
            "LONG_SHA": "abc1234ffff",
            "IS_CI": "0",
        }


class TestTag:
    def test_sequence_positive(self):
        with pytest.raises(ValidationError):
            Tag(sequence=0, label="ci-build-0000")

    def test_str(self):
        assert str(Tag(sequence=3, label="ci-build-0003")) == "ci-build-0003"


class TestLedgerEntry:
    def test_defaults(self):
        entry = LedgerEntry(run_id="r", stage_id="validate")
        assert entry.entry_hash == ""
        assert entry.timestamp_utc.tzinfo is not None
        assert entry.entry_id


class TestDefaultStages:
    def test_dag_shape(self):
        by_id = {sd.stage_id: sd for sd in DEFAULT_STAGE_DEFINITIONS}
        assert by_id["validate"].is_gate
        assert by_id["export"].prerequisites == ["validate"]
        assert by_id["publish"].prerequisites == ["export"]
        assert by_id["postprocess"].prerequisites == ["export"]


class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()
        assert config.tags.prefix == "ci-build-"
        assert config.tags.width == 4
        assert config.validation.tracked_counters == [
            "violations",
            "unconnected_items",
            "schematic_parity",
        ]

    def test_from_boardforge_toml(self, tmp_dir: Path):
        path = tmp_dir / "boardforge.toml"
        path.write_text(
            'project_name = "widget"\n'
            "[tags]\n"
            'prefix = "hw-"\n'
            "width = 3\n"
            "[[validation.checks]]\n"
            'name = "erc"\n'
            'command = ["kicad-cli", "sch", "erc", "{PROJECT_NAME}.kicad_sch"]\n'
        )
        config = PipelineConfig.from_toml(path)
        assert config.project_name == "widget"
        assert config.tags.prefix == "hw-"
        assert config.validation.checks[0].name == "erc"

    def test_from_pyproject_table(self, tmp_dir: Path):
        path = tmp_dir / "pyproject.toml"
        path.write_text('[project]\nname = "x"\n\n[tool.boardforge]\nproject_name = "widget"\n')
        assert PipelineConfig.from_toml(path).project_name == "widget"

    def test_unknown_report_format_rejected(self):
        with pytest.raises(ValidationError):
            ToolInvocation(name="x", command=["x"], report_format="xml")


class TestDefaultKicadConfig:
    def test_every_template_uses_known_slots(self):
        config = default_kicad_config("widget")
        known = {
            "BRANCH",
            "SHORT_SHA",
            "LONG_SHA",
            "IS_CI",
            "PROJECT_NAME",
            "OUTPUT_DIR",
            "INPUT_DIR",
            *config.variables,
        }
        invocations = [
            *config.validation.checks,
            *config.export.invocations,
            *config.postprocess.invocations,
        ]
        for invocation in invocations:
            for template in [*invocation.command, *invocation.outputs]:
                assert placeholders(template) <= known, (invocation.name, template)

    def test_gate_uses_error_severity_report(self):
        checks = default_kicad_config().validation.checks
        assert [c.name for c in checks if c.gating] == ["drc-error"]

    def test_previews_are_exported(self):
        config = default_kicad_config()
        preview_outputs = {
            out
            for inv in config.export.invocations
            if inv.category == config.publish.preview_category
            for out in inv.outputs
        }
        for preview in config.publish.previews:
            assert f"{{OUTPUT_DIR}}/{preview.name}" in preview_outputs

    def test_composites_run_after_rasterizing(self):
        phases = {inv.name: inv.phase for inv in default_kicad_config().export.invocations}
        assert phases["svg-F.Cu"] == 0
        assert phases["png-F.Cu"] == 1
        assert phases["png-top"] == 2

    def test_bom_keeps_kicad_text_variables(self):
        bom = next(i for i in default_kicad_config().export.invocations if i.name == "bom")
        assert placeholders(bom.command[bom.command.index("--fields") + 1]) == set()
