"""StatusProjection — pure read-only view over the RunLedger.

The status view is a PROJECTION of the Run Ledger.  It does not compute
truth, it displays it.  Every call re-reads from the ledger; the
StatusProjection class never maintains its own state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from shipwright.core.job_graph import JobGraph
from shipwright.core.run_ledger import RunLedger
from shipwright.models.context import RunContext
from shipwright.models.jobs import TERMINAL_STATES, JobState
from shipwright.models.ledger import LedgerEntry


class JobStatus(BaseModel):
    """Point-in-time status of a single job, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    name: str
    stage: str
    state: JobState = JobState.CREATED
    entered_at: datetime | None = None
    detail: str = ""


class StageStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    jobs: list[JobStatus] = []

    @property
    def state(self) -> JobState:
        """Worst job state first: failed, running, manual, then the rest."""
        states = {j.state for j in self.jobs}
        for candidate in (
            JobState.FAILED, JobState.RUNNING, JobState.MANUAL,
            JobState.DEGRADED, JobState.CANCELED,
        ):
            if candidate in states:
                return candidate
        if states and states <= {JobState.SKIPPED}:
            return JobState.SKIPPED
        if states and states <= TERMINAL_STATES:
            return JobState.SUCCESS
        return JobState.CREATED


class RunSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of a pipeline run.

    Computed fresh on every ``snapshot()`` call, never persisted.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    context: RunContext
    status: str
    pipeline_path: str = ""
    stages: list[StageStatus] = []
    created_at: datetime
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def jobs(self) -> list[JobStatus]:
        return [j for s in self.stages for j in s.jobs]

    @property
    def pending_approvals(self) -> list[str]:
        return [j.name for j in self.jobs if j.state == JobState.MANUAL]

    @property
    def completed_count(self) -> int:
        return sum(1 for j in self.jobs if j.state in TERMINAL_STATES)

    @property
    def total_jobs(self) -> int:
        return len(self.jobs)

    @property
    def failed_jobs(self) -> list[JobStatus]:
        return [j for j in self.jobs if j.state == JobState.FAILED]


class StatusProjection:
    """Pure read-only projection over the RunLedger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    graph:
        Optional job graph.  With it, jobs that never transitioned are
        listed (as ``created``) in declaration order; without it, stages
        and jobs appear in the order the ledger first saw them.
    """

    def __init__(self, ledger: RunLedger, graph: JobGraph | None = None) -> None:
        self._ledger = ledger
        self._graph = graph

    def snapshot(self, run_id: str) -> RunSnapshot:
        """Re-read the ledger and build a snapshot of ``run_id``."""
        record = self._ledger.get_run(run_id)
        entries = self._ledger.get_run_entries(run_id)
        jobs = self._replay(entries)

        stage_order: list[str] = []
        job_order: list[tuple[str, str]] = []
        if self._graph is not None:
            stage_order = [s.name for s in self._graph.stages]
            job_order = [(j.stage, j.name) for j in self._graph.jobs]
        for entry in entries:
            if entry.stage not in stage_order:
                stage_order.append(entry.stage)
            if (entry.stage, entry.job_name) not in job_order:
                job_order.append((entry.stage, entry.job_name))

        stages = [
            StageStatus(
                name=stage,
                jobs=[
                    jobs.get(name) or JobStatus(name=name, stage=stage)
                    for job_stage, name in job_order
                    if job_stage == stage
                ],
            )
            for stage in stage_order
        ]

        return RunSnapshot(
            run_id=run_id,
            context=record.context,
            status=record.status,
            pipeline_path=record.pipeline_path,
            stages=stages,
            created_at=record.created_at,
            last_updated=entries[-1].timestamp_utc if entries else record.created_at,
        )

    def latest(self) -> RunSnapshot | None:
        record = self._ledger.latest_run()
        return self.snapshot(record.run_id) if record else None

    @staticmethod
    def _replay(entries: list[LedgerEntry]) -> dict[str, JobStatus]:
        """Last transition wins for every job."""
        result: dict[str, JobStatus] = {}
        for entry in entries:
            result[entry.job_name] = JobStatus(
                name=entry.job_name,
                stage=entry.stage,
                state=JobState(entry.to_state),
                entered_at=entry.timestamp_utc,
                detail=entry.detail,
            )
        return result
