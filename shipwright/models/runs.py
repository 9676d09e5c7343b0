"""Run, stage and job result models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shipwright.models.context import RunContext
from shipwright.models.instances import RolloutResult
from shipwright.models.jobs import JobState


class RunStatus(str, Enum):
    """Overall outcome of a pipeline run."""

    RUNNING = "running"
    SUCCESS = "success"
    DEGRADED = "degraded"  # finished; a rollout or tolerated job failed
    FAILED = "failed"
    PENDING_APPROVAL = "pending_approval"  # parked at a manual gate
    CANCELED = "canceled"


class JobResult(BaseModel):
    """What happened to one job in one run."""

    model_config = ConfigDict(frozen=True)

    name: str
    stage: str
    state: JobState
    reason: str = ""
    exit_code: int | None = None
    output: str = ""
    allow_failure: bool = False
    rollout: RolloutResult | None = None
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def blocks_pipeline(self) -> bool:
        """A failure that stops every later non-``always`` stage."""
        return self.state == JobState.FAILED and not self.allow_failure


class StageResult(BaseModel):
    """Job results of one stage, in declaration order."""

    model_config = ConfigDict(frozen=True)

    name: str
    jobs: dict[str, JobResult] = {}

    @property
    def failed(self) -> bool:
        return any(j.blocks_pipeline for j in self.jobs.values())


class RunResult(BaseModel):
    """Final (or parked) view of a run returned by the scheduler."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    context: RunContext
    status: RunStatus
    stages: list[StageResult] = []
    pending_approvals: list[str] = []

    def job(self, name: str) -> JobResult:
        for stage in self.stages:
            if name in stage.jobs:
                return stage.jobs[name]
        raise KeyError(name)

    @property
    def jobs(self) -> dict[str, JobResult]:
        return {n: r for s in self.stages for n, r in s.jobs.items()}
