"""Job, stage and gate models plus the job state transition table."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shipwright.models.context import RefKind, RunContext


class JobState(str, Enum):
    """Lifecycle of a single job within one run."""

    CREATED = "created"
    MANUAL = "manual"  # gate passed, waiting for an explicit approve
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    DEGRADED = "degraded"  # finished, but a rollout only partially succeeded
    SKIPPED = "skipped"
    CANCELED = "canceled"


TERMINAL_STATES: frozenset[JobState] = frozenset({
    JobState.SUCCESS,
    JobState.FAILED,
    JobState.DEGRADED,
    JobState.SKIPPED,
    JobState.CANCELED,
})

# RUNNING -> CREATED is the re-queue taken when a restored run finds a job
# that was in flight when its process died.
VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.CREATED: {
        JobState.MANUAL, JobState.RUNNING, JobState.SKIPPED, JobState.CANCELED,
    },
    JobState.MANUAL: {JobState.RUNNING, JobState.SKIPPED, JobState.CANCELED},
    JobState.RUNNING: {
        JobState.SUCCESS, JobState.FAILED, JobState.DEGRADED, JobState.CREATED,
    },
    JobState.SUCCESS: set(),
    JobState.FAILED: set(),
    JobState.DEGRADED: set(),
    JobState.SKIPPED: set(),
    JobState.CANCELED: set(),
}


class WhenPolicy(str, Enum):
    """When a gated-in job runs."""

    ON_SUCCESS = "on_success"
    MANUAL = "manual"
    ALWAYS = "always"


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

_KEYWORD_FILTERS = {"branches": RefKind.BRANCH, "tags": RefKind.TAG}


def _ref_matches(pattern: str, ctx: RunContext) -> bool:
    """Match one ``only``/``except`` entry against a run context."""
    if pattern in _KEYWORD_FILTERS:
        return ctx.ref_kind == _KEYWORD_FILTERS[pattern]
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.search(pattern[1:-1], ctx.ref_name) is not None
    return ctx.ref_name == pattern


class Gate(BaseModel):
    """Declarative ref filter deciding whether a job runs for a context.

    Pure function of the RunContext: no I/O, no side effects.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    only: list[str] = []
    except_: list[str] = Field(default_factory=list, alias="except")

    @field_validator("only", "except_")
    @classmethod
    def _check_patterns(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
                try:
                    re.compile(pattern[1:-1])
                except re.error as exc:
                    raise ValueError(f"invalid ref pattern {pattern!r}: {exc}") from exc
        return patterns

    def matches(self, ctx: RunContext) -> bool:
        if self.only and not any(_ref_matches(p, ctx) for p in self.only):
            return False
        return not any(_ref_matches(p, ctx) for p in self.except_)


# ---------------------------------------------------------------------------
# Stage and job definitions
# ---------------------------------------------------------------------------


class StageDefinition(BaseModel):
    """An ordered pipeline stage.

    ``always`` stages run even after an upstream failure (the clean-up
    stage of a classic pipeline).
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    always: bool = False


class Command(BaseModel):
    """One line of a job's command sequence.

    ``allow_non_zero`` replaces the shell ``|| true`` idiom: a non-zero
    exit is recorded but does not fail the job.  ``target`` names an
    environment whose host runs the command instead of the local shell.
    """

    model_config = ConfigDict(frozen=True)

    run: str = Field(min_length=1)
    allow_non_zero: bool = False
    target: str | None = None


class ActionKind(str, Enum):
    PUBLISH = "publish"
    PROMOTE = "promote"
    DEPLOY = "deploy"


class JobDefinition(BaseModel):
    """A job: gate + command sequence + at most one built-in action.

    Built-in actions run after the command sequence succeeds:

    - ``publish``: push ``publish`` (an image or file) to the registry
      under the run's commit key.
    - ``promote``: point alias ``promote`` (``{ref_name}`` etc. expanded)
      at the commit key.
    - ``deploy``: roll the commit key out to environment ``deploy``.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    stage: str = Field(min_length=1)
    commands: list[Command] = []
    gate: Gate = Gate()
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    allow_failure: bool = False
    needs: list[str] = []
    requires_artifact: bool = False
    variables: dict[str, str] = {}
    publish: str | None = None
    promote: str | None = None
    deploy: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> JobDefinition:
        actions = [a for a in (self.publish, self.promote, self.deploy) if a]
        if len(actions) > 1:
            raise ValueError(
                f"job {self.name!r} declares more than one of publish/promote/deploy"
            )
        if not self.commands and not actions:
            raise ValueError(f"job {self.name!r} has no script and no action")
        if self.name in self.needs:
            raise ValueError(f"job {self.name!r} needs itself")
        return self

    @property
    def is_manual(self) -> bool:
        return self.when == WhenPolicy.MANUAL

    @property
    def runs_always(self) -> bool:
        return self.when == WhenPolicy.ALWAYS

    @property
    def action(self) -> ActionKind | None:
        if self.publish:
            return ActionKind.PUBLISH
        if self.promote:
            return ActionKind.PROMOTE
        if self.deploy:
            return ActionKind.DEPLOY
        return None

    @property
    def needs_artifact(self) -> bool:
        """Promote and deploy always need the commit's artifact to exist."""
        return self.requires_artifact or self.action in (
            ActionKind.PROMOTE, ActionKind.DEPLOY,
        )
