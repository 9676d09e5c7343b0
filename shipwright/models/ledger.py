"""Run Ledger models (append-only: one entry per job state transition)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from shipwright.models.context import RunContext


class LedgerEntry(BaseModel):
    """A single job state transition.

    The status view and resumed runs are projections of these entries.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    job_name: str
    stage: str
    state_transition: str  # "from_state->to_state", e.g. "created->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: str = ""  # skip reason, error, rollout summary (already redacted)

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]


class RunRecord(BaseModel):
    """One row per run: enough to restore the run in another process."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    context: RunContext
    pipeline_path: str = ""
    status: str = "running"
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
