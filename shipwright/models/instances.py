"""Deployment target models: instances, environments, apply and rollout results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PortMapping(BaseModel):
    """``host_port:container_port`` publish rule for a container."""

    model_config = ConfigDict(frozen=True)

    host_port: int = Field(gt=0, lt=65536)
    container_port: int = Field(gt=0, lt=65536)

    @classmethod
    def parse(cls, spec: str | int) -> PortMapping:
        """Parse ``"81:80"`` (or a bare ``"80"``) into a mapping."""
        text = str(spec)
        host, sep, container = text.partition(":")
        if not sep:
            container = host
        try:
            return cls(host_port=int(host), container_port=int(container))
        except ValueError as exc:
            raise ValueError(f"invalid port mapping {spec!r}") from exc

    def __str__(self) -> str:
        return f"{self.host_port}:{self.container_port}"


class HostBinding(BaseModel):
    """Where an instance runs and which host ports it owns."""

    model_config = ConfigDict(frozen=True)

    host: str
    ports: list[PortMapping] = []

    @field_validator("ports", mode="before")
    @classmethod
    def _parse_ports(cls, value: object) -> object:
        if isinstance(value, list):
            return [
                PortMapping.parse(p) if isinstance(p, (str, int)) else p
                for p in value
            ]
        return value


class Instance(BaseModel):
    """A named, independently addressable deployment target.

    ``current_artifact_key`` is the last known value only; the real state
    lives on the remote host and is reconciled on query.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    container_name: str
    host_binding: HostBinding
    current_artifact_key: str | None = None


class RolloutStrategy(str, Enum):
    SEQUENTIAL = "sequential"  # stop at first failure
    FIXED_SET = "fixed_set"  # every instance independently, fixed order


class EnvironmentDefinition(BaseModel):
    """A group of instances deployed together (``staging``, ``production``)."""

    model_config = ConfigDict(frozen=True)

    name: str
    host: str = "localhost"
    user: str | None = None
    strategy: RolloutStrategy = RolloutStrategy.SEQUENTIAL
    image: str | None = None  # falls back to the pipeline-level image
    restart_policy: str = "unless-stopped"
    instances: list[Instance]

    @model_validator(mode="after")
    def _check_instances(self) -> EnvironmentDefinition:
        if not self.instances:
            raise ValueError(f"environment {self.name!r} has no instances")
        names = [i.name for i in self.instances]
        if len(set(names)) != len(names):
            raise ValueError(f"environment {self.name!r} has duplicate instance names")
        # Two containers cannot publish the same port on one host.
        owners: dict[tuple[str, int], str] = {}
        for inst in self.instances:
            for port in inst.host_binding.ports:
                slot = (inst.host_binding.host, port.host_port)
                if slot in owners:
                    raise ValueError(
                        f"instances {owners[slot]!r} and {inst.name!r} both bind "
                        f"{slot[0]}:{slot[1]}"
                    )
                owners[slot] = inst.name
        return self

    def instance(self, name: str) -> Instance:
        for inst in self.instances:
            if inst.name == name:
                return inst
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ApplyStep(str, Enum):
    """The five idempotent steps of an apply, in execution order."""

    STOP = "stop"
    REMOVE = "remove"
    PREPARE = "prepare"
    START = "start"
    RECORD = "record"


class ApplyStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class ApplyResult(BaseModel):
    """Outcome of one ``apply_state`` call on one instance."""

    model_config = ConfigDict(frozen=True)

    instance: str
    artifact_key: str
    status: ApplyStatus
    completed_steps: list[ApplyStep] = []
    failed_step: ApplyStep | None = None
    error: str | None = None
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def ok(self) -> bool:
        return self.status == ApplyStatus.SUCCESS


class RolloutStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class RolloutResult(BaseModel):
    """Per-instance results of one rollout, in application order."""

    model_config = ConfigDict(frozen=True)

    environment: str
    artifact_key: str
    strategy: RolloutStrategy
    status: RolloutStatus
    instances: dict[str, ApplyResult]

    @property
    def failed(self) -> list[str]:
        return [n for n, r in self.instances.items() if r.status == ApplyStatus.FAILED]

    @property
    def succeeded(self) -> list[str]:
        return [n for n, r in self.instances.items() if r.ok]
