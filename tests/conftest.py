"""Shared test fixtures for Shipwright."""

from __future__ import annotations

import shlex
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from shipwright.core.job_graph import JobGraph
from shipwright.core.job_machine import JobMachine
from shipwright.core.registry import LocalArtifactRegistry
from shipwright.core.run_ledger import RunLedger
from shipwright.core.transport import ExecResult
from shipwright.models.context import RefKind, RunContext
from shipwright.models.instances import (
    EnvironmentDefinition,
    HostBinding,
    Instance,
    PortMapping,
    RolloutStrategy,
)
from shipwright.models.jobs import Command, JobDefinition, JobState, StageDefinition
from shipwright.models.runs import JobResult

COMMIT = "3f9c2a7b1d4e5f60718293a4b5c6d7e8f9012345"


# ---------------------------------------------------------------------------
# Fake docker host
# ---------------------------------------------------------------------------


class FakeHost:
    """In-memory docker host reached through the ``Transport`` interface.

    Understands the handful of docker commands the runtime and registry
    issue.  Anything else exits 0.  ``fail`` maps a command substring to
    ``(exit_code, stderr)`` and wins over the simulation.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.envs: list[dict[str, str]] = []
        self.containers: dict[str, dict[str, Any]] = {}
        self.images: set[str] = set()
        self.fail: dict[str, tuple[int, str]] = {}
        self.stdout: dict[str, str] = {}
        self.not_running_after_start: set[str] = set()
        self._lock = threading.Lock()

    @property
    def commands(self) -> list[str]:
        return [command for _, command in self.calls]

    def exec(
        self,
        target: str,
        command: str,
        *,
        allow_non_zero: bool = False,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        with self._lock:
            self.calls.append((target, command))
            self.envs.append(dict(env or {}))
            code, out, err = self._dispatch(command)
        return ExecResult(
            target=target,
            command=command,
            exit_code=code,
            stdout=out,
            stderr=err,
            allow_non_zero=allow_non_zero,
        )

    def _dispatch(self, command: str) -> tuple[int, str, str]:
        for pattern, (code, err) in self.fail.items():
            if pattern in command:
                return code, "", err
        for pattern, out in self.stdout.items():
            if pattern in command:
                return 0, out, ""
        if command.startswith("docker "):
            return self._docker(shlex.split(command))
        return 0, "", ""

    def _docker(self, argv: list[str]) -> tuple[int, str, str]:
        verb = argv[1]
        if verb == "stop":
            name = argv[2]
            if name not in self.containers:
                return 1, "", f"Error response from daemon: No such container: {name}"
            self.containers[name]["running"] = False
            return 0, f"{name}\n", ""
        if verb == "rm":
            name = argv[2]
            if self.containers.pop(name, None) is None:
                return 1, "", f"Error response from daemon: No such container: {name}"
            return 0, f"{name}\n", ""
        if verb == "pull":
            self.images.add(argv[2])
            return 0, f"Status: Downloaded newer image for {argv[2]}\n", ""
        if verb == "run":
            if "--name" not in argv:
                # One-shot container (``docker run --rm IMAGE cmd``).
                return 0, "", ""
            name = argv[argv.index("--name") + 1]
            image = argv[-1]
            if name in self.containers:
                return 125, "", f'Conflict. The container name "/{name}" is already in use'
            self.containers[name] = {
                "image": image,
                "running": name not in self.not_running_after_start,
                "argv": argv,
            }
            return 0, "c0ffee00\n", ""
        if verb == "inspect":
            fmt, name = argv[3], argv[4]
            if name not in self.containers:
                return 1, "", f"Error: No such object: {name}"
            container = self.containers[name]
            if "State.Running" in fmt:
                return 0, "true\n" if container["running"] else "false\n", ""
            return 0, f"{container['image']}\n", ""
        return 0, "", ""


class RecordingRunner:
    """JobRunner double: returns a scripted state per job and records order."""

    def __init__(
        self,
        outcomes: dict[str, JobState] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.started: list[str] = []
        self.finished: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run_job(self, job: JobDefinition, ctx: RunContext) -> JobResult:
        with self._lock:
            self.started.append(job.name)
            self.events.append(("start", job.name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.delay:
            time.sleep(self.delay)
        state = self.outcomes.get(job.name, JobState.SUCCESS)
        with self._lock:
            self.active -= 1
            self.finished.append(job.name)
            self.events.append(("end", job.name))
        return JobResult(
            name=job.name,
            stage=job.stage,
            state=state,
            reason="" if state == JobState.SUCCESS else f"{job.name} scripted {state.value}",
            allow_failure=job.allow_failure,
        )


# ---------------------------------------------------------------------------
# Basic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def machine(ledger: RunLedger) -> JobMachine:
    """Provide a ledger-backed JobMachine."""
    return JobMachine(ledger)


@pytest.fixture
def registry(tmp_dir: Path) -> LocalArtifactRegistry:
    """Provide a fresh local artifact registry in a temp directory."""
    return LocalArtifactRegistry(tmp_dir / "registry")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "sw-test-run-001"


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def master_ctx() -> RunContext:
    """A push to the master branch."""
    return RunContext(commit_sha=COMMIT, ref_name="master", actor="ci")


@pytest.fixture
def tag_ctx() -> RunContext:
    """A release tag push."""
    return RunContext(
        commit_sha=COMMIT, ref_name="v1.2.3", ref_kind=RefKind.TAG, actor="ci"
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_job() -> Callable[..., JobDefinition]:
    """Factory fixture: a script job with sensible defaults."""

    def _factory(name: str, stage: str = "build", **overrides: Any) -> JobDefinition:
        if "commands" not in overrides and not any(
            overrides.get(k) for k in ("publish", "promote", "deploy")
        ):
            overrides["commands"] = [Command(run=f"echo {name}")]
        return JobDefinition(name=name, stage=stage, **overrides)

    return _factory


@pytest.fixture
def make_graph(make_job: Callable[..., JobDefinition]) -> Callable[..., JobGraph]:
    """Factory fixture: a graph from ``(name, stage, overrides)`` tuples.

    ``stages`` entries are stage names; a trailing ``!`` marks an
    ``always`` stage.
    """

    def _factory(
        jobs: list[tuple[str, str] | tuple[str, str, dict[str, Any]]],
        stages: list[str] | None = None,
    ) -> JobGraph:
        names = stages or ["build", "test", "push", "deploy", "clean_up!"]
        graph = JobGraph([
            StageDefinition(name=s.rstrip("!"), always=s.endswith("!")) for s in names
        ])
        for spec in jobs:
            name, stage = spec[0], spec[1]
            overrides = spec[2] if len(spec) > 2 else {}
            graph.add_job(make_job(name, stage, **overrides))
        return graph

    return _factory


@pytest.fixture
def make_environment() -> Callable[..., EnvironmentDefinition]:
    """Factory fixture: an environment of colour-named instances on one host."""

    def _factory(
        name: str = "production",
        instances: tuple[str, ...] = ("blue", "yellow", "green", "red"),
        strategy: RolloutStrategy = RolloutStrategy.FIXED_SET,
        host: str = "prod.example.com",
    ) -> EnvironmentDefinition:
        return EnvironmentDefinition(
            name=name,
            host=host,
            strategy=strategy,
            image="registry.example.com/appster",
            instances=[
                Instance(
                    name=inst,
                    container_name=f"appster-{inst}",
                    host_binding=HostBinding(
                        host=host,
                        ports=[
                            PortMapping(host_port=81 + i, container_port=80),
                            PortMapping(host_port=8081 + i, container_port=8080),
                        ],
                    ),
                )
                for i, inst in enumerate(instances)
            ],
        )

    return _factory
