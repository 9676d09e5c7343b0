"""Stage Scheduler: walk the Job Graph stage by stage.

Within a stage, gated-in jobs run concurrently on a thread pool; stage
boundaries are barriers.  A failure that is not ``allow_failure`` skips
every later stage except ``always`` stages and ``when: always`` jobs.

Manual jobs wait in the MANUAL state until ``approve``.  A manual job
still waiting when another job of its stage fails is skipped, so a failed
run never parks.  Two waiting modes exist:

- blocking: ``run`` suspends on a condition variable until ``approve``
  or ``cancel`` is called from another thread.  No timeout, no polling.
- parking: ``run`` returns a RunResult with status ``pending_approval``;
  ``approve`` then ``resume`` continues.  With a ledger-backed job
  machine the parked run can be ``restore``-d in a fresh process.

No retries.  Work already done (a pushed image) is never undone.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from shipwright.core.executor import JobRunner
from shipwright.core.job_graph import JobGraph
from shipwright.core.job_machine import JobMachine
from shipwright.models.context import RunContext
from shipwright.models.jobs import TERMINAL_STATES, JobDefinition, JobState, StageDefinition
from shipwright.models.runs import JobResult, RunResult, RunStatus, StageResult

logger = logging.getLogger(__name__)

_SATISFIED = frozenset({JobState.SUCCESS, JobState.DEGRADED})


class ApprovalError(RuntimeError):
    """``approve`` named a job that is not awaiting approval."""


class SchedulerStateError(RuntimeError):
    """``resume``/``approve`` called with no run loaded."""


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"sw-{ts}-{uuid.uuid4().hex[:6]}"


class StageScheduler:
    """Executes a JobGraph for one RunContext.

    Parameters
    ----------
    runner:
        Executes a single job and reports its terminal state.
    machine:
        Job state machine; pass one backed by a RunLedger to make runs
        restorable.
    max_workers:
        Thread pool size per stage.
    block_on_manual:
        ``True`` for blocking mode, ``False`` for parking mode.
    """

    def __init__(
        self,
        runner: JobRunner,
        *,
        machine: JobMachine | None = None,
        max_workers: int = 4,
        block_on_manual: bool = True,
    ) -> None:
        self._runner = runner
        self._machine = machine or JobMachine()
        self._max_workers = max_workers
        self._block_on_manual = block_on_manual
        self._cond = threading.Condition(threading.RLock())

        self._graph: JobGraph | None = None
        self._ctx: RunContext | None = None
        self._run_id = ""
        self._results: dict[str, JobResult] = {}
        self._approved: set[str] = set()
        self._canceled = False

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def machine(self) -> JobMachine:
        return self._machine

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, graph: JobGraph, ctx: RunContext, *, run_id: str | None = None) -> RunResult:
        """Execute ``graph`` from the first stage."""
        graph.validate()
        with self._cond:
            self._graph = graph
            self._ctx = ctx
            self._run_id = run_id or new_run_id()
            self._results = {}
            self._approved = set()
            self._canceled = False
            self._machine.initialize_run(self._run_id, graph)
        logger.info(
            "run %s started for %s@%s (%d jobs)",
            self._run_id, ctx.ref_name, ctx.short_sha, len(graph),
        )
        return self._drive()

    def restore(self, run_id: str, graph: JobGraph, ctx: RunContext) -> list[str]:
        """Load a parked run from the job machine's ledger.

        Jobs found RUNNING (their process died mid-job) are re-queued, so
        they run again on ``resume``.  Returns the jobs awaiting approval.
        """
        states = self._machine.restore_run(run_id, graph)
        with self._cond:
            self._graph = graph
            self._ctx = ctx
            self._run_id = run_id
            self._approved = set()
            self._canceled = False
            self._results = {}

            last_detail: dict[str, str] = {}
            for entry in self._machine.entries(run_id):
                last_detail[entry.job_name] = entry.detail

            for name, state in states.items():
                job = graph.get_job(name)
                if state == JobState.RUNNING:
                    self._machine.transition(
                        run_id, name, JobState.CREATED, detail="re-queued on restore"
                    )
                    logger.warning("job %s was running when run %s parked; re-queued", name, run_id)
                elif state in TERMINAL_STATES:
                    self._results[name] = JobResult(
                        name=name,
                        stage=job.stage,
                        state=state,
                        reason=last_detail.get(name, ""),
                        allow_failure=job.allow_failure,
                    )
        return self.pending_approvals()

    def resume(self) -> RunResult:
        """Continue a parked run (after ``approve``)."""
        if self._graph is None:
            raise SchedulerStateError("no run to resume")
        logger.info("run %s resumed", self._run_id)
        return self._drive()

    def pending_approvals(self) -> list[str]:
        """Jobs in the MANUAL state that have not been approved yet."""
        with self._cond:
            if self._graph is None:
                return []
            states = self._machine.get_all_states(self._run_id)
            return [
                j.name for j in self._graph.jobs
                if states.get(j.name) == JobState.MANUAL and j.name not in self._approved
            ]

    def approve(self, job_name: str) -> None:
        """Release exactly ``job_name`` from its manual gate."""
        with self._cond:
            if self._graph is None:
                raise SchedulerStateError("no run loaded")
            if job_name not in self._graph:
                raise ApprovalError(f"unknown job {job_name!r}")
            state = self._machine.get_current_state(self._run_id, job_name)
            if state != JobState.MANUAL or job_name in self._approved:
                raise ApprovalError(
                    f"job {job_name!r} is not awaiting approval (state: {state.value})"
                )
            self._approved.add(job_name)
            logger.info("job %s approved", job_name)
            self._cond.notify_all()

    def cancel(self) -> None:
        """In-flight jobs finish; jobs not yet started are canceled.

        Later stages are skipped, except ``always`` stages and jobs.
        """
        with self._cond:
            self._canceled = True
            logger.warning("run %s cancel requested", self._run_id)
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Driving the graph
    # ------------------------------------------------------------------

    def _drive(self) -> RunResult:
        assert self._graph is not None
        for stage, jobs in self._graph.topological_order():
            finished = self._run_stage(stage, jobs)
            if not finished:
                logger.info(
                    "run %s parked at stage %s awaiting %s",
                    self._run_id, stage.name, self.pending_approvals(),
                )
                return self._snapshot(RunStatus.PENDING_APPROVAL)
        return self._snapshot(self._final_status())

    def _run_stage(self, stage: StageDefinition, jobs: list[JobDefinition]) -> bool:
        """Run one stage to completion.  ``False`` means the run parked."""
        assert self._graph is not None
        rank = self._graph.stage_rank(stage.name)
        upstream_failed = any(
            r.blocks_pipeline for r in self._results.values()
            if self._graph.stage_rank(r.stage) < rank
        )
        entered_canceled = self._canceled

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix=f"sw-{stage.name}"
        ) as pool:
            with self._cond:
                while True:
                    progressed = self._advance(
                        stage, jobs, pool,
                        upstream_failed=upstream_failed,
                        entered_canceled=entered_canceled,
                    )
                    states = self._machine.get_all_states(self._run_id)
                    if all(states[j.name] in TERMINAL_STATES for j in jobs):
                        return True
                    if progressed:
                        continue
                    running = any(states[j.name] == JobState.RUNNING for j in jobs)
                    if not running and not self._block_on_manual:
                        return False
                    self._cond.wait()

    def _advance(
        self,
        stage: StageDefinition,
        jobs: list[JobDefinition],
        pool: ThreadPoolExecutor,
        *,
        upstream_failed: bool,
        entered_canceled: bool,
    ) -> bool:
        """One pass over the stage's waiting jobs.  Called with the lock held."""
        assert self._ctx is not None
        progressed = False
        for job in jobs:
            state = self._machine.get_current_state(self._run_id, job.name)
            if state in TERMINAL_STATES or state == JobState.RUNNING:
                continue
            exempt = stage.always or job.runs_always

            if self._canceled and not exempt:
                if entered_canceled:
                    self._finish(job, JobState.SKIPPED, "run canceled")
                else:
                    self._finish(job, JobState.CANCELED, "run canceled")
                progressed = True
                continue
            if upstream_failed and not exempt:
                self._finish(job, JobState.SKIPPED, "an earlier stage failed")
                progressed = True
                continue
            if state == JobState.CREATED and not JobGraph.gate(job, self._ctx):
                self._finish(
                    job, JobState.SKIPPED,
                    f"gate excludes {self._ctx.ref_kind.value} {self._ctx.ref_name}",
                )
                progressed = True
                continue

            blocker = self._unsatisfied_need(job)
            if blocker is None:
                continue  # a same-stage dependency is still pending
            if blocker:
                self._finish(job, JobState.SKIPPED, f"dependency {blocker} did not succeed")
                progressed = True
                continue

            if job.is_manual:
                if job.name not in self._approved and self._stage_failed(jobs):
                    self._finish(job, JobState.SKIPPED, "an earlier job in this stage failed")
                    progressed = True
                    continue
                if state == JobState.CREATED:
                    self._machine.transition(
                        self._run_id, job.name, JobState.MANUAL, detail="awaiting approval"
                    )
                    logger.info("job %s is waiting for approval", job.name)
                    progressed = True
                    continue
                if job.name not in self._approved:
                    continue

            self._machine.transition(self._run_id, job.name, JobState.RUNNING)
            pool.submit(self._execute, job)
            progressed = True
        return progressed

    def _stage_failed(self, jobs: list[JobDefinition]) -> bool:
        """A job of this stage already failed without ``allow_failure``."""
        return any(
            self._results[j.name].blocks_pipeline for j in jobs if j.name in self._results
        )

    def _unsatisfied_need(self, job: JobDefinition) -> str | None:
        """``""`` if all needs succeeded, a job name if one did not, ``None`` if pending."""
        for dep in job.needs:
            state = self._machine.get_current_state(self._run_id, dep)
            if state not in TERMINAL_STATES:
                return None
            if state in _SATISFIED:
                continue
            result = self._results.get(dep)
            if state == JobState.FAILED and result is not None and result.allow_failure:
                continue
            return dep
        return ""

    def _execute(self, job: JobDefinition) -> None:
        """Worker thread body: run the job, then publish its result."""
        assert self._ctx is not None
        logger.info("job %s started", job.name)
        try:
            result = self._runner.run_job(job, self._ctx)
        except Exception as exc:  # runner bugs become job failures
            logger.exception("job %s crashed", job.name)
            result = JobResult(
                name=job.name,
                stage=job.stage,
                state=JobState.FAILED,
                reason=f"{type(exc).__name__}: {exc}",
                allow_failure=job.allow_failure,
            )
        if result.state not in (JobState.SUCCESS, JobState.FAILED, JobState.DEGRADED):
            result = result.model_copy(update={"state": JobState.FAILED})
        with self._cond:
            self._machine.transition(
                self._run_id, job.name, result.state, detail=result.reason
            )
            self._results[job.name] = result
            self._cond.notify_all()
        logger.info("job %s finished: %s", job.name, result.state.value)

    def _finish(self, job: JobDefinition, state: JobState, reason: str) -> None:
        self._machine.transition(self._run_id, job.name, state, detail=reason)
        self._results[job.name] = JobResult(
            name=job.name,
            stage=job.stage,
            state=state,
            reason=reason,
            allow_failure=job.allow_failure,
        )
        logger.info("job %s %s: %s", job.name, state.value, reason)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _final_status(self) -> RunStatus:
        results = self._results.values()
        if self._canceled:
            return RunStatus.CANCELED
        if any(r.blocks_pipeline for r in results):
            return RunStatus.FAILED
        if any(
            r.state == JobState.DEGRADED or (r.state == JobState.FAILED and r.allow_failure)
            for r in results
        ):
            return RunStatus.DEGRADED
        return RunStatus.SUCCESS

    def _snapshot(self, status: RunStatus) -> RunResult:
        assert self._graph is not None and self._ctx is not None
        with self._cond:
            states = self._machine.get_all_states(self._run_id)
            stages = []
            for stage in self._graph.stages:
                jobs: dict[str, JobResult] = {}
                for job in self._graph.jobs:
                    if job.stage != stage.name:
                        continue
                    jobs[job.name] = self._results.get(job.name) or JobResult(
                        name=job.name,
                        stage=job.stage,
                        state=states[job.name],
                        reason="awaiting approval" if states[job.name] == JobState.MANUAL else "",
                        allow_failure=job.allow_failure,
                    )
                stages.append(StageResult(name=stage.name, jobs=jobs))
            return RunResult(
                run_id=self._run_id,
                context=self._ctx,
                status=status,
                stages=stages,
                pending_approvals=self.pending_approvals(),
            )
