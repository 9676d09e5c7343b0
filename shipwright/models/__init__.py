"""Shipwright data models — all Pydantic v2, all frozen (immutable)."""

from shipwright.models.artifacts import Alias, Artifact, ArtifactHandle
from shipwright.models.context import RefKind, RunContext
from shipwright.models.instances import (
    ApplyResult,
    ApplyStatus,
    ApplyStep,
    EnvironmentDefinition,
    HostBinding,
    Instance,
    PortMapping,
    RolloutResult,
    RolloutStatus,
    RolloutStrategy,
)
from shipwright.models.jobs import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActionKind,
    Command,
    Gate,
    JobDefinition,
    JobState,
    StageDefinition,
    WhenPolicy,
)
from shipwright.models.ledger import LedgerEntry, RunRecord
from shipwright.models.pipeline import PipelineDefinition
from shipwright.models.runs import JobResult, RunResult, RunStatus, StageResult

__all__ = [
    # artifacts
    "Artifact",
    "Alias",
    "ArtifactHandle",
    # context
    "RefKind",
    "RunContext",
    # instances
    "PortMapping",
    "HostBinding",
    "Instance",
    "EnvironmentDefinition",
    "RolloutStrategy",
    "ApplyStep",
    "ApplyStatus",
    "ApplyResult",
    "RolloutStatus",
    "RolloutResult",
    # jobs
    "JobState",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "WhenPolicy",
    "Gate",
    "StageDefinition",
    "Command",
    "ActionKind",
    "JobDefinition",
    # ledger
    "LedgerEntry",
    "RunRecord",
    # pipeline
    "PipelineDefinition",
    # runs
    "RunStatus",
    "JobResult",
    "StageResult",
    "RunResult",
]
