"""End-to-end integration tests — full pipeline execution for one commit.

These tests exercise the Orchestrator, StageScheduler, StageMachine,
RunLedger, ArtifactStore, TagAllocator and the local publishing backends
working together, with real subprocess tools standing in for the EDA CLI.
"""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path

import pytest

from boardforge.config import ForgeSettings
from boardforge.core.orchestrator import Orchestrator
from boardforge.core.tag_allocator import FileTagHistory
from boardforge.models.ledger import EntryKind
from boardforge.models.revision import TriggerEvent
from boardforge.models.stages import StageState
from boardforge.monitor.projection import RunProjection


class RacingTagHistory(FileTagHistory):
    """A file history where a competing run grabs ``stolen`` first."""

    def __init__(self, directory: Path, stolen: str) -> None:
        super().__init__(directory)
        self._stolen: str | None = stolen

    def reserve(self, label: str, target: str) -> None:
        if self._stolen is not None:
            competitor, self._stolen = self._stolen, None
            super().reserve(competitor, "competitor")
        super().reserve(label, target)


class TestCleanRun:
    """Gate passes: export, publish and post-process all run."""

    @pytest.fixture
    def orch(self, pipeline_config, forge_settings: ForgeSettings, workspace: Path) -> Orchestrator:
        return Orchestrator(pipeline_config, settings=forge_settings, workspace=workspace)

    def test_every_stage_succeeds(self, orch: Orchestrator, trigger: TriggerEvent):
        result = orch.run(trigger)
        assert result.succeeded
        assert result.gate_passed
        assert set(result.states.values()) == {StageState.SUCCEEDED}
        assert orch.get_states(result.run_id) == result.states

    def test_release_references_sealed_bundle(
        self, orch: Orchestrator, trigger: TriggerEvent, forge_settings: ForgeSettings
    ):
        result = orch.run(trigger)
        release = result.release
        assert release is not None
        assert release.tag.label == "ci-build-0001"
        assert release.title == "CI Build #1"
        assert release.bundle_digest == orch.artifact_store.bundle(trigger.revision).bundle_digest
        assert release.asset_names == ["Gerber-abc1234.zip", "BOM-abc1234.csv"]

        release_dir = forge_settings.releases_path / "ci-build-0001"
        meta = json.loads((release_dir / "release.json").read_text())
        assert meta["tag"] == "ci-build-0001"
        with zipfile.ZipFile(io.BytesIO((release_dir / "Gerber-abc1234.zip").read_bytes())) as zf:
            assert sorted(zf.namelist()) == ["gerber/board-B_Cu.gbr", "gerber/board-F_Cu.gbr"]

    def test_missing_preview_is_left_out(self, orch: Orchestrator, trigger: TriggerEvent):
        release = orch.run(trigger).release
        assert release is not None
        assert list(release.image_urls) == ["Top Layer"]
        assert "![Top Layer](file://" in release.body
        assert "Bottom Layer" not in release.body
        assert f"On commit: {trigger.revision.long}" in release.body

    def test_postprocess_adds_category_after_seal(
        self, orch: Orchestrator, trigger: TriggerEvent
    ):
        orch.run(trigger)
        store = orch.artifact_store
        assert store.get(trigger.revision, "jlc-gerber") == {
            "jlc-board-B_Cu.gbr": b"board-B_Cu.gbr\n",
            "jlc-board-F_Cu.gbr": b"board-F_Cu.gbr\n",
        }
        assert "jlc-gerber" not in store.bundle(trigger.revision).categories

    def test_ledger_records_the_run(self, orch: Orchestrator, trigger: TriggerEvent):
        result = orch.run(trigger)
        assert orch.verify_chain(result.run_id)
        kinds = [e.kind for e in orch.get_run_entries(result.run_id)]
        assert kinds.count(EntryKind.GATE_DECISION) == 1
        assert EntryKind.RELEASE in kinds
        assert EntryKind.TOOL_OUTPUT in kinds

        snapshot = RunProjection(orch.ledger).snapshot(result.run_id)
        assert snapshot.release_tag == "ci-build-0001"
        assert snapshot.revision == trigger.revision.long
        assert snapshot.chain_valid

    def test_runs_get_separate_work_dirs(
        self, orch: Orchestrator, trigger: TriggerEvent, forge_settings: ForgeSettings
    ):
        first = orch.run(trigger)
        second = orch.run(trigger)
        assert first.run_id != second.run_id
        work = forge_settings.work_path
        assert (work / first.run_id).is_dir()
        assert (work / second.run_id).is_dir()

    def test_rerun_of_same_commit_gets_next_tag(self, orch: Orchestrator, trigger: TriggerEvent):
        first = orch.run(trigger)
        second = orch.run(trigger)
        assert second.succeeded, second.errors
        assert first.release is not None and second.release is not None
        assert second.release.tag.label == "ci-build-0002"
        assert second.release.bundle_digest == first.release.bundle_digest


class TestRerunSameCommit:
    """Exporters that stamp a creation time still re-run a commit cleanly."""

    @pytest.fixture
    def orch(self, make_pipeline_config, forge_settings: ForgeSettings, workspace: Path):
        return Orchestrator(
            make_pipeline_config(stamped=True), settings=forge_settings, workspace=workspace
        )

    def test_both_runs_succeed(self, orch: Orchestrator, trigger: TriggerEvent):
        first = orch.run(trigger)
        second = orch.run(trigger)
        assert first.succeeded, first.errors
        assert second.succeeded, second.errors
        assert set(second.states.values()) == {StageState.SUCCEEDED}
        assert first.release is not None and second.release is not None
        assert second.release.tag.label == "ci-build-0002"
        assert second.release.bundle_digest != first.release.bundle_digest

    def test_each_run_keeps_its_own_generation(self, orch: Orchestrator, trigger: TriggerEvent):
        first = orch.run(trigger)
        second = orch.run(trigger)
        store = orch.artifact_store
        revision = trigger.revision
        assert store.current_run(revision) == second.run_id
        assert store.bundle(revision).bundle_digest == second.release.bundle_digest
        assert (
            store.bundle(revision, run_id=first.run_id).bundle_digest
            == first.release.bundle_digest
        )
        assert store.get(revision, "fabrication", run_id=first.run_id) != store.get(
            revision, "fabrication"
        )
        assert "jlc-gerber" in store.list(revision, run_id=first.run_id)
        assert "jlc-gerber" in store.list(revision)


class TestGateStop:
    """Violations close the gate: nothing downstream runs or is stored."""

    @pytest.fixture
    def result(self, make_pipeline_config, forge_settings, workspace, trigger):
        orch = Orchestrator(
            make_pipeline_config(violations=3), settings=forge_settings, workspace=workspace
        )
        return orch, orch.run(trigger)

    def test_downstream_skipped(self, result):
        _, run = result
        assert run.succeeded
        assert not run.gate_passed
        assert run.gate_decision.counters["violations"] == 3
        assert run.states["validate"] == StageState.SUCCEEDED
        for stage_id in ("export", "publish", "postprocess"):
            assert run.states[stage_id] == StageState.SKIPPED
            assert run.skip_reasons[stage_id].startswith("gate validate said stop")

    def test_nothing_published(self, result, trigger, forge_settings: ForgeSettings):
        orch, run = result
        assert run.release is None
        assert orch.artifact_store.list(trigger.revision, run_id=run.run_id) == set()
        assert not orch.artifact_store.is_sealed(trigger.revision)
        assert FileTagHistory(forge_settings.tags_path).labels() == []

    def test_failing_tool_fails_validation(
        self, pipeline_config, make_tool, forge_settings, workspace, trigger
    ):
        config = pipeline_config.model_copy(
            update={
                "validation": pipeline_config.validation.model_copy(
                    update={"checks": [make_tool("drc", "import sys; sys.exit(4)")]}
                )
            }
        )
        orch = Orchestrator(config, settings=forge_settings, workspace=workspace)
        run = orch.run(trigger)
        assert run.failed_stages == ["validate"]
        assert "drc" in run.errors["validate"]
        for stage_id in ("export", "publish", "postprocess"):
            assert run.states[stage_id] == StageState.SKIPPED
        assert orch.verify_chain(run.run_id)


class TestTagNumbering:
    """Tags continue from history and survive a competing reservation."""

    @pytest.fixture
    def seeded(self, forge_settings: ForgeSettings) -> ForgeSettings:
        FileTagHistory(forge_settings.tags_path).reserve("ci-build-0007", "0" * 40)
        return forge_settings

    def test_continues_from_history(self, pipeline_config, seeded, workspace, trigger):
        orch = Orchestrator(pipeline_config, settings=seeded, workspace=workspace)
        release = orch.run(trigger).release
        assert release is not None
        assert release.tag.label == "ci-build-0008"
        assert FileTagHistory(seeded.tags_path).target_of("ci-build-0008") == trigger.revision.long

    def test_competitor_takes_next_number(self, pipeline_config, seeded, workspace, trigger):
        history = RacingTagHistory(seeded.tags_path, stolen="ci-build-0008")
        orch = Orchestrator(
            pipeline_config, settings=seeded, workspace=workspace, tag_history=history
        )
        release = orch.run(trigger).release
        assert release is not None
        assert release.tag.label == "ci-build-0009"
        assert release.title == "CI Build #9"
        assert history.target_of("ci-build-0008") == "competitor"
        assert history.target_of("ci-build-0009") == trigger.revision.long
