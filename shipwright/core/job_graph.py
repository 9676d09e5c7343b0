"""Job DAG grouped into ordered stages.

Edges come from two sources:
- implicit: every job depends on every job of every earlier stage;
- explicit: ``needs`` entries.

An explicit edge pointing at a job in a *later* stage therefore closes a
cycle through the implicit edges.  Same-stage ``needs`` are checked with a
DFS.  Insertion is all-or-nothing: a rejected job leaves the graph as it was.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator

from shipwright.models.context import RunContext
from shipwright.models.jobs import JobDefinition, StageDefinition

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """The pipeline definition is invalid.  Raised before any job runs."""


class DuplicateJobError(ConfigError):
    """A job with the same name is already in the graph."""


class CyclicDependencyError(ConfigError):
    """Inserting a job would make the dependency graph cyclic."""


class JobGraph:
    """Directed acyclic graph of jobs, partitioned into ordered stages.

    Parameters
    ----------
    stages:
        Stage definitions in execution order.
    """

    def __init__(self, stages: list[StageDefinition]) -> None:
        names = [s.name for s in stages]
        if not names:
            raise ConfigError("pipeline declares no stages")
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigError(f"duplicate stage names: {dupes}")

        self._stages: list[StageDefinition] = list(stages)
        self._stage_rank: dict[str, int] = {s.name: i for i, s in enumerate(stages)}
        # Declaration order doubles as the deterministic tie-break.
        self._jobs: dict[str, JobDefinition] = {}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_job(self, job: JobDefinition) -> None:
        """Insert a job, rejecting duplicates, unknown stages and cycles."""
        if job.name in self._jobs:
            raise DuplicateJobError(f"duplicate job name: {job.name!r}")
        if job.stage not in self._stage_rank:
            raise ConfigError(
                f"job {job.name!r} uses undeclared stage {job.stage!r}. "
                f"Declared stages: {[s.name for s in self._stages]}"
            )

        cycle = self._find_cycle(job)
        if cycle:
            raise CyclicDependencyError(
                f"adding job {job.name!r} creates a dependency cycle: "
                + " -> ".join(cycle)
            )

        self._jobs[job.name] = job
        logger.debug("Added job %s to stage %s", job.name, job.stage)

    def _find_cycle(self, job: JobDefinition) -> list[str]:
        """Return the cycle ``job`` would close, or ``[]``."""
        rank = self._stage_rank[job.stage]

        # Explicit edge into a later stage: the later job implicitly needs us.
        for dep in job.needs:
            other = self._jobs.get(dep)
            if other is not None and self._stage_rank[other.stage] > rank:
                return [job.name, dep, f"(stage {other.stage} follows {job.stage})", job.name]

        # An existing job in an earlier stage that names us in ``needs``.
        for other in self._jobs.values():
            if job.name in other.needs and self._stage_rank[other.stage] < rank:
                return [other.name, job.name, f"(stage {job.stage} follows {other.stage})", other.name]

        # Same-stage explicit edges, including ones that dangled until now.
        tentative = dict(self._jobs)
        tentative[job.name] = job
        path: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> bool:
            if name in on_path:
                path.append(name)
                return True
            if name in done or name not in tentative:
                return False
            on_path.add(name)
            path.append(name)
            for dep in tentative[name].needs:
                if visit(dep):
                    return True
            path.pop()
            on_path.discard(name)
            done.add(name)
            return False

        if visit(job.name):
            start = path.index(path[-1])
            return path[start:]
        return []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def stages(self) -> list[StageDefinition]:
        return list(self._stages)

    @property
    def jobs(self) -> list[JobDefinition]:
        """All jobs in declaration order."""
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def get_job(self, name: str) -> JobDefinition:
        return self._jobs[name]

    def stage_rank(self, stage: str) -> int:
        return self._stage_rank[stage]

    def stage_of(self, job_name: str) -> StageDefinition:
        return self._stages[self._stage_rank[self._jobs[job_name].stage]]

    def same_stage_needs(self, job: JobDefinition) -> list[str]:
        """Explicit dependencies that the scheduler must wait for in-stage."""
        return [d for d in job.needs if d in self._jobs and self._jobs[d].stage == job.stage]

    def validate(self) -> None:
        """Check every ``needs`` entry resolves to a declared job."""
        for job in self._jobs.values():
            missing = [d for d in job.needs if d not in self._jobs]
            if missing:
                raise ConfigError(
                    f"job {job.name!r} needs unknown job(s) {missing}. "
                    f"Known jobs: {sorted(self._jobs)}"
                )

    def topological_order(self) -> Iterator[tuple[StageDefinition, list[JobDefinition]]]:
        """Yield ``(stage, jobs)`` pairs in stage order.

        Within a stage, jobs are stable-sorted by declaration order subject
        to same-stage ``needs`` (Kahn's algorithm keyed on declaration
        index).  Lazy: each stage is ordered only when requested.
        """
        self.validate()
        order = {name: i for i, name in enumerate(self._jobs)}

        for stage in self._stages:
            members = [j for j in self._jobs.values() if j.stage == stage.name]
            in_degree = {j.name: len(self.same_stage_needs(j)) for j in members}
            dependents: dict[str, list[str]] = {j.name: [] for j in members}
            for j in members:
                for dep in self.same_stage_needs(j):
                    dependents[dep].append(j.name)

            ready = deque(sorted(
                (n for n, d in in_degree.items() if d == 0), key=order.__getitem__
            ))
            ordered: list[JobDefinition] = []
            while ready:
                name = ready.popleft()
                ordered.append(self._jobs[name])
                released = []
                for dep in dependents[name]:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        released.append(dep)
                ready.extend(released)
                ready = deque(sorted(ready, key=order.__getitem__))

            if len(ordered) != len(members):
                # add_job rejects cycles; reaching here means the graph was
                # mutated behind our back.
                stuck = sorted(n for n, d in in_degree.items() if d > 0)
                raise CyclicDependencyError(f"stage {stage.name!r} has a cycle: {stuck}")

            yield stage, ordered

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    @staticmethod
    def gate(job: JobDefinition, ctx: RunContext) -> bool:
        """Whether ``job``'s ref filter admits this run.

        The manual flag is not part of this predicate: a manual job that
        passes its gate still waits for approval in the scheduler.
        """
        return job.gate.matches(ctx)
