"""boardforge data models — all Pydantic v2, all frozen (immutable)."""

from boardforge.models.artifacts import ArtifactBundle, ArtifactRef, CategoryManifest
from boardforge.models.config import (
    AssetRule,
    ExportConfig,
    PipelineConfig,
    PostprocessConfig,
    PreviewImage,
    PublishConfig,
    TagConfig,
    ValidationConfig,
    default_kicad_config,
)
from boardforge.models.ledger import EntryKind, LedgerEntry
from boardforge.models.release import ReleaseAsset, ReleaseRecord, ReleaseRequest, Tag
from boardforge.models.reports import Finding, GateDecision, Report
from boardforge.models.revision import Revision, TriggerEvent
from boardforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
)
from boardforge.models.tools import ReportFormat, ToolInvocation, ToolResult

__all__ = [
    # revision
    "Revision",
    "TriggerEvent",
    # tools
    "ReportFormat",
    "ToolInvocation",
    "ToolResult",
    # reports
    "Finding",
    "Report",
    "GateDecision",
    # artifacts
    "ArtifactRef",
    "ArtifactBundle",
    "CategoryManifest",
    # release
    "Tag",
    "ReleaseAsset",
    "ReleaseRequest",
    "ReleaseRecord",
    # stages
    "StageState",
    "StageDefinition",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "DEFAULT_STAGE_DEFINITIONS",
    # ledger
    "EntryKind",
    "LedgerEntry",
    # config
    "AssetRule",
    "ExportConfig",
    "PipelineConfig",
    "PostprocessConfig",
    "PreviewImage",
    "PublishConfig",
    "TagConfig",
    "ValidationConfig",
    "default_kicad_config",
]
