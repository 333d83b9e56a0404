"""Canonical Run Ledger entry model (append-only, hash-chained).

The Run Ledger is the durable record of a pipeline run. It is:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous via SHA-256)
- Event-driven (one entry per transition, tool output, gate decision or release)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    TRANSITION = "transition"
    TOOL_OUTPUT = "tool_output"
    GATE_DECISION = "gate_decision"
    RELEASE = "release"


class LedgerEntry(BaseModel):
    """A single entry in the append-only Run Ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    stage_id: str
    kind: EntryKind = EntryKind.TRANSITION
    state_transition: str = ""  # "from_state->to_state", e.g. "pending->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    revision: str = ""  # long revision id
    payload: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed after construction, seals this entry
