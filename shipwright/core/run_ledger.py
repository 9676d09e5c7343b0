"""Append-only Run Ledger backed by SQLite.

The ledger is the source of truth for a run. The status view is a
projection of it, and a run parked at a manual gate is restored from it
in another process.

Design:
- ``runs``: one row per run (context, pipeline path, overall status).
- ``job_transitions``: append-only, one row per job state transition.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from shipwright.models.context import RunContext
from shipwright.models.ledger import LedgerEntry, RunRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    run_id         TEXT PRIMARY KEY,
    context_json   TEXT NOT NULL,
    pipeline_path  TEXT NOT NULL DEFAULT '',
    status         TEXT NOT NULL,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL
);
"""

_CREATE_TRANSITIONS = """
CREATE TABLE IF NOT EXISTS job_transitions (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id          TEXT NOT NULL UNIQUE,
    run_id            TEXT NOT NULL,
    job_name          TEXT NOT NULL,
    stage             TEXT NOT NULL,
    state_transition  TEXT NOT NULL,
    timestamp_utc     TEXT NOT NULL,
    detail            TEXT NOT NULL DEFAULT ''
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_transitions_run ON job_transitions(run_id, id);
"""

_CREATE_IDX_RUN_JOB = """
CREATE INDEX IF NOT EXISTS idx_transitions_run_job
    ON job_transitions(run_id, job_name, id);
"""


class UnknownRunError(LookupError):
    """Raised when a run id is not in the ledger."""


class RunLedger:
    """Append-only job transition log plus a run header table.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
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
            conn.execute(_CREATE_RUNS)
            conn.execute(_CREATE_TRANSITIONS)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_RUN_JOB)
            conn.commit()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, record: RunRecord) -> RunRecord:
        now = record.created_at.isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs
                    (run_id, context_json, pipeline_path, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.context.model_dump_json(),
                    record.pipeline_path,
                    record.status,
                    now,
                    now,
                ),
            )
            conn.commit()
        logger.debug("Created run %s", record.run_id)
        return record

    def set_run_status(self, run_id: str, status: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE run_id = ?",
                (status, datetime.now(timezone.utc).isoformat(), run_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise UnknownRunError(run_id)

    def get_run(self, run_id: str) -> RunRecord:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT run_id, context_json, pipeline_path, status, created_at "
                "FROM runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        if row is None:
            raise UnknownRunError(run_id)
        return self._row_to_run(row)

    def latest_run(self, status: str | None = None) -> RunRecord | None:
        """Most recently created run, optionally filtered by status."""
        query = (
            "SELECT run_id, context_json, pipeline_path, status, created_at FROM runs"
        )
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, limit: int = 20) -> list[RunRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id, context_json, pipeline_path, status, created_at "
                "FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    @staticmethod
    def _row_to_run(row: tuple) -> RunRecord:
        return RunRecord(
            run_id=row[0],
            context=RunContext.model_validate_json(row[1]),
            pipeline_path=row[2],
            status=row[3],
            created_at=datetime.fromisoformat(row[4]),
        )

    # ------------------------------------------------------------------
    # Job transitions (append-only)
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Record one job transition.  This is the only transition writer."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_transitions
                    (entry_id, run_id, job_name, stage, state_transition,
                     timestamp_utc, detail)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.job_name,
                    entry.stage,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat(),
                    entry.detail,
                ),
            )
            conn.commit()
        return entry

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """All transitions of a run, in the order they were recorded."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, run_id, job_name, stage, state_transition, "
                "timestamp_utc, detail FROM job_transitions "
                "WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_job_history(self, run_id: str, job_name: str) -> list[LedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, run_id, job_name, stage, state_transition, "
                "timestamp_utc, detail FROM job_transitions "
                "WHERE run_id = ? AND job_name = ? ORDER BY id ASC",
                (run_id, job_name),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row[0],
            run_id=row[1],
            job_name=row[2],
            stage=row[3],
            state_transition=row[4],
            timestamp_utc=datetime.fromisoformat(row[5]),
            detail=row[6],
        )
