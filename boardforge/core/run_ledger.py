"""Append-only, hash-chained Run Ledger backed by SQLite.

Every stage transition, every captured tool output (failed runs
included), the gate decision and the release record of a run end up
here, so nothing a run observed is lost even when it is graded a failure.

Design:
- Append-only: only `append()` writes; no update, no delete.
- Hash-chained per run: each entry includes SHA-256 of the previous entry.
- WAL journal mode for concurrent readers.
- entry_hash UNIQUE constraint for tamper detection.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from boardforge.core.hasher import compute_entry_hash
from boardforge.models.ledger import EntryKind, LedgerEntry


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    stage_id              TEXT NOT NULL,
    kind                  TEXT NOT NULL,
    state_transition      TEXT NOT NULL DEFAULT '',
    timestamp_utc         TEXT NOT NULL,
    revision              TEXT NOT NULL DEFAULT '',
    payload_json          TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_CREATE_IDX_REVISION = """
CREATE INDEX IF NOT EXISTS idx_revision ON run_ledger(revision, id);
"""

_COLUMNS = (
    "id, entry_id, run_id, stage_id, kind, state_transition, timestamp_utc, "
    "revision, payload_json, previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained Run Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes read-latest-hash + insert so chains stay linear when
        # stages record tool output from worker threads.
        self._append_lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_REVISION)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry to the ledger, computing hash chain links.

        Returns the entry with `previous_entry_hash` and `entry_hash` set.
        This is the ONLY write method. There is no update or delete.
        """
        with self._append_lock:
            previous_hash = self._get_latest_hash(entry.run_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            entry_hash = compute_entry_hash(entry_dict)

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": entry_hash,
                }
            )
            self._insert(sealed, entry_dict["payload"])
        return sealed

    def record(
        self,
        run_id: str,
        stage_id: str,
        kind: EntryKind,
        payload: dict[str, Any],
        *,
        revision: str = "",
    ) -> LedgerEntry:
        """Append a non-transition entry (tool output, gate decision, release)."""
        return self.append(
            LedgerEntry(
                run_id=run_id,
                stage_id=stage_id,
                kind=kind,
                revision=revision,
                payload=payload,
            )
        )

    def _insert(self, entry: LedgerEntry, payload: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_ledger
                    (entry_id, run_id, stage_id, kind, state_transition,
                     timestamp_utc, revision, payload_json,
                     previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.stage_id,
                    entry.kind.value,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    entry.revision,
                    json.dumps(payload, sort_keys=True),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_latest(self, run_id: str) -> LedgerEntry | None:
        """Return the most recent ledger entry for a run, or None."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_run_entries(
        self, run_id: str, *, kind: EntryKind | None = None
    ) -> list[LedgerEntry]:
        """Return ledger entries for a run, ordered chronologically."""
        query = f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ?"
        params: tuple[Any, ...] = (run_id,)
        if kind is not None:
            query += " AND kind = ?"
            params += (kind.value,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id ASC", params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_stage_history(self, run_id: str, stage_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a specific stage in a run."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM run_ledger "
                "WHERE run_id = ? AND stage_id = ? ORDER BY id ASC",
                (run_id, stage_id),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return all distinct run_ids, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id FROM run_ledger GROUP BY run_id ORDER BY MAX(id) DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def get_runs_for_revision(self, revision: str) -> list[str]:
        """Return run_ids that recorded anything for a long revision id."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id FROM run_ledger WHERE revision = ? "
                "GROUP BY run_id ORDER BY MAX(id) DESC",
                (revision,),
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity for a run.

        Walks all entries in order, recomputes each entry_hash, and
        verifies that previous_entry_hash links match.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        """Convert a SQLite row tuple to a LedgerEntry."""
        (
            _id,
            entry_id,
            run_id,
            stage_id,
            kind,
            state_transition,
            timestamp_utc,
            revision,
            payload_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            stage_id=stage_id,
            kind=EntryKind(kind),
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            revision=revision,
            payload=json.loads(payload_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
