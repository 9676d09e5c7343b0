"""Job Executor: run one job's commands and built-in action.

A job is its command sequence followed by at most one action:

- publish: push the build output under the run's commit key
- promote: point an alias (``latest``, the release tag) at the commit key
- deploy: roll the commit key out to an environment

The executor never raises for an expected failure (non-zero exit, missing
artifact, registry or transport error): it returns a ``JobResult`` in
state FAILED carrying the cause.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Protocol, runtime_checkable

from shipwright.core.registry import ArtifactNotFoundError, ArtifactRegistry, RegistryError
from shipwright.core.rollout import RolloutCoordinator
from shipwright.core.transport import LOCAL_TARGET, Redactor, Transport, TransportError
from shipwright.models.context import RunContext
from shipwright.models.instances import EnvironmentDefinition, RolloutResult, RolloutStatus
from shipwright.models.jobs import ActionKind, JobDefinition, JobState
from shipwright.models.pipeline import PipelineDefinition
from shipwright.models.runs import JobResult

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000

TransportFactory = Callable[[EnvironmentDefinition | None], Transport]


class CommandFailedError(RuntimeError):
    """A non-tolerated command of a job exited non-zero."""

    def __init__(self, job: str, command: str, exit_code: int, stderr: str = "") -> None:
        self.job = job
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(
            f"job {job}: {command!r} exited {exit_code}" + (f": {tail}" if tail else "")
        )


@runtime_checkable
class JobRunner(Protocol):
    """Anything the scheduler can hand a job to."""

    def run_job(self, job: JobDefinition, ctx: RunContext) -> JobResult:
        ...


def expand(template: str, ctx: RunContext, image: str | None = None) -> str:
    """Substitute ``{commit_sha}``-style placeholders from the run context."""
    values = ctx.template_vars()
    values["image"] = image or ""
    return template.format_map(values)


class PipelineJobRunner:
    """Executes jobs of one pipeline definition.

    Parameters
    ----------
    pipeline:
        Supplies pipeline variables and the environments commands and
        deploy actions may target.
    transport_factory:
        Returns the transport for an environment, or the local one for
        ``None``.
    registry:
        Artifact registry used by publish/promote and artifact checks.
    coordinator:
        Rollout coordinator used by deploy actions.
    base_env:
        Extra environment exported to every command (injected secrets).
    secrets:
        Values redacted from recorded output and reasons.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        transport_factory: TransportFactory,
        registry: ArtifactRegistry,
        coordinator: RolloutCoordinator,
        base_env: Mapping[str, str] | None = None,
        secrets: tuple[str, ...] = (),
    ) -> None:
        self._pipeline = pipeline
        self._transport_factory = transport_factory
        self._registry = registry
        self._coordinator = coordinator
        self._base_env = dict(base_env or {})
        self._redactor = Redactor(secrets)

    def job_env(self, job: JobDefinition, ctx: RunContext) -> dict[str, str]:
        """Environment for ``job``; later layers win."""
        env = dict(self._base_env)
        env.update(self._pipeline.variables)
        if self._pipeline.image:
            env.setdefault("SHIPWRIGHT_IMAGE", self._pipeline.image)
        env.update(ctx.as_env())
        env.update(job.variables)
        return env

    # ------------------------------------------------------------------
    # JobRunner
    # ------------------------------------------------------------------

    def run_job(self, job: JobDefinition, ctx: RunContext) -> JobResult:
        key = ctx.commit_sha
        if job.needs_artifact:
            try:
                present = self._registry.exists(key)
            except RegistryError as exc:
                return self._result(job, JobState.FAILED, reason=str(exc))
            if not present:
                return self._result(
                    job, JobState.FAILED, reason=str(ArtifactNotFoundError(key))
                )

        env = self.job_env(job, ctx)
        output: list[str] = []
        for command in job.commands:
            environment = (
                self._pipeline.environment(command.target) if command.target else None
            )
            host = environment.host if environment else LOCAL_TARGET
            try:
                result = self._transport_factory(environment).exec(
                    host, command.run, allow_non_zero=command.allow_non_zero, env=env,
                )
            except TransportError as exc:
                return self._result(job, JobState.FAILED, reason=str(exc), output=output)
            output.append(result.stdout)
            if not result.ok:
                error = CommandFailedError(job.name, result.command, result.exit_code, result.stderr)
                output.append(result.stderr)
                return self._result(
                    job, JobState.FAILED, reason=str(error),
                    exit_code=result.exit_code, output=output,
                )

        if job.action is None:
            return self._result(job, JobState.SUCCESS, exit_code=0, output=output)
        try:
            return self._run_action(job, ctx, output)
        except (RegistryError, TransportError) as exc:
            return self._result(job, JobState.FAILED, reason=str(exc), output=output)

    def _run_action(self, job: JobDefinition, ctx: RunContext, output: list[str]) -> JobResult:
        key = ctx.commit_sha
        action = job.action

        if action == ActionKind.PUBLISH:
            artifact = self._registry.push(key, expand(job.publish, ctx, self._pipeline.image))
            return self._result(
                job, JobState.SUCCESS, output=output,
                reason=f"published {key} {artifact.digest}".rstrip(),
            )

        if action == ActionKind.PROMOTE:
            alias = self._registry.tag(key, expand(job.promote, ctx, self._pipeline.image))
            return self._result(
                job, JobState.SUCCESS, output=output,
                reason=f"alias {alias.name} -> {alias.key}",
            )

        environment = self._pipeline.environment(job.deploy)
        rollout = self._coordinator.rollout(environment, key)
        if rollout.status == RolloutStatus.SUCCESS:
            state = JobState.SUCCESS
        elif rollout.status == RolloutStatus.PARTIAL_FAILURE:
            state = JobState.DEGRADED
        else:
            state = JobState.FAILED
        summary = ", ".join(
            f"{name}={r.status.value}" for name, r in rollout.instances.items()
        )
        return self._result(
            job, state, output=output, rollout=rollout,
            reason=f"rollout to {environment.name} {rollout.status.value}: {summary}",
        )

    def _result(
        self,
        job: JobDefinition,
        state: JobState,
        *,
        reason: str = "",
        exit_code: int | None = None,
        output: list[str] | None = None,
        rollout: RolloutResult | None = None,
    ) -> JobResult:
        text = self._redactor.redact("".join(output or []))[-_OUTPUT_TAIL:]
        if state == JobState.FAILED:
            logger.error("job %s failed: %s", job.name, self._redactor.redact(reason))
        return JobResult(
            name=job.name,
            stage=job.stage,
            state=state,
            reason=self._redactor.redact(reason),
            exit_code=exit_code,
            output=text,
            allow_failure=job.allow_failure,
            rollout=rollout,
        )
