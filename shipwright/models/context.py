"""Per-run context — the only state gates and jobs may read."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RefKind(str, Enum):
    """Whether a run was triggered by a branch push or a tag."""

    BRANCH = "branch"
    TAG = "tag"


class RunContext(BaseModel):
    """Immutable record created once per pipeline run.

    Passed by value into every gate evaluation and job execution; there is
    no ambient pipeline state beyond this object.
    """

    model_config = ConfigDict(frozen=True)

    commit_sha: str = Field(min_length=1)
    ref_name: str = Field(min_length=1)
    ref_kind: RefKind = RefKind.BRANCH
    actor: str = "unknown"

    @property
    def is_tag(self) -> bool:
        return self.ref_kind == RefKind.TAG

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:8]

    def template_vars(self) -> dict[str, str]:
        """Values available to ``{placeholder}`` substitution in definitions."""
        return {
            "commit_sha": self.commit_sha,
            "short_sha": self.short_sha,
            "ref_name": self.ref_name,
            "ref_kind": self.ref_kind.value,
            "actor": self.actor,
        }

    def as_env(self) -> dict[str, str]:
        """Environment variables exported to every job command."""
        return {
            "SHIPWRIGHT_COMMIT_SHA": self.commit_sha,
            "SHIPWRIGHT_COMMIT_SHORT_SHA": self.short_sha,
            "SHIPWRIGHT_REF_NAME": self.ref_name,
            "SHIPWRIGHT_REF_KIND": self.ref_kind.value,
            "SHIPWRIGHT_ACTOR": self.actor,
        }
