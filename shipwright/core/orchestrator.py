"""Pipeline orchestrator — the central coordinator for Shipwright runs.

The Orchestrator wires together the pipeline definition, RunLedger,
JobMachine, InstanceStore, ArtifactRegistry, transports, RolloutCoordinator
and StageScheduler into a single execution engine.  The CLI only talks to
this class.
"""

from __future__ import annotations

import logging
from pathlib import Path

from shipwright.config import ShipwrightSettings
from shipwright.config import settings as default_settings
from shipwright.core import definition
from shipwright.core.apply_engine import RemoteApplyEngine
from shipwright.core.executor import PipelineJobRunner, TransportFactory
from shipwright.core.instance_store import InstanceStore
from shipwright.core.job_graph import ConfigError
from shipwright.core.job_machine import JobMachine
from shipwright.core.registry import (
    ArtifactRegistry,
    DockerArtifactRegistry,
    LocalArtifactRegistry,
)
from shipwright.core.rollout import RolloutCoordinator
from shipwright.core.run_ledger import RunLedger
from shipwright.core.runtime import DockerRuntime
from shipwright.core.scheduler import ApprovalError, StageScheduler, new_run_id
from shipwright.core.transport import LocalTransport, SSHTransport, Transport
from shipwright.models.context import RunContext
from shipwright.models.instances import EnvironmentDefinition, Instance
from shipwright.models.ledger import RunRecord
from shipwright.models.runs import RunResult, RunStatus

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class Orchestrator:
    """Runs one pipeline definition against the configured infrastructure.

    Parameters
    ----------
    pipeline_path:
        Pipeline file.  Defaults to ``settings.pipeline_file``.
    settings:
        Runtime settings.  Uses the module-level singleton if not provided.
    transport_factory:
        Override how commands reach hosts (tests pass fakes).
    registry:
        Override the artifact registry built from settings.
    block_on_manual:
        Blocking (in-process) vs parking (CLI) approval mode.
    """

    def __init__(
        self,
        pipeline_path: Path | str | None = None,
        *,
        settings: ShipwrightSettings | None = None,
        transport_factory: TransportFactory | None = None,
        registry: ArtifactRegistry | None = None,
        block_on_manual: bool = False,
    ) -> None:
        self.settings = settings or default_settings
        self.pipeline_path = Path(pipeline_path or self.settings.pipeline_file)
        self.pipeline, self.graph = definition.load(self.pipeline_path)

        # Core subsystems
        self.ledger = RunLedger(self.settings.resolved_ledger_path)
        self.instance_store = InstanceStore(self.settings.resolved_ledger_path)
        self._transports: dict[str, Transport] = {}
        self._transport_factory = transport_factory or self._default_transport
        self.registry = registry or self._build_registry()
        self.coordinator = RolloutCoordinator(self.registry, self.engine_for)
        self.runner = PipelineJobRunner(
            self.pipeline,
            transport_factory=self._transport_factory,
            registry=self.registry,
            coordinator=self.coordinator,
            base_env=self.settings.injected_env(),
            secrets=self.settings.secret_values(),
        )
        self.machine = JobMachine(self.ledger)
        self.scheduler = StageScheduler(
            self.runner,
            machine=self.machine,
            max_workers=self.settings.max_workers,
            block_on_manual=block_on_manual,
        )

    @classmethod
    def for_run(
        cls,
        run_id: str | None = None,
        *,
        settings: ShipwrightSettings | None = None,
        **kwargs,
    ) -> tuple[Orchestrator, RunRecord]:
        """Build an orchestrator for the pipeline file a recorded run used.

        With ``run_id=None`` the most recent run parked for approval is used.
        """
        settings = settings or default_settings
        ledger = RunLedger(settings.resolved_ledger_path)
        if run_id is None:
            record = ledger.latest_run(status=RunStatus.PENDING_APPROVAL.value)
            if record is None:
                raise ApprovalError("no run is awaiting approval")
        else:
            record = ledger.get_run(run_id)
        orchestrator = cls(record.pipeline_path or None, settings=settings, **kwargs)
        return orchestrator, record

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _default_transport(self, environment: EnvironmentDefinition | None) -> Transport:
        host = environment.host if environment else "localhost"
        if host not in self._transports:
            timeout = self.settings.command_timeout_seconds
            secrets = self.settings.secret_values()
            if host in _LOCAL_HOSTS:
                self._transports[host] = LocalTransport(
                    cwd=str(self.pipeline_path.resolve().parent),
                    timeout=timeout,
                    secrets=secrets,
                )
            else:
                key = self.settings.ssh_key_path
                self._transports[host] = SSHTransport(
                    user=(environment.user if environment else None) or self.settings.ssh_user,
                    identity_file=str(key) if key else None,
                    port=self.settings.ssh_port,
                    timeout=timeout,
                    secrets=secrets,
                )
        return self._transports[host]

    def _build_registry(self) -> ArtifactRegistry:
        if self.settings.registry_backend == "local":
            return LocalArtifactRegistry(
                self.settings.resolved_registry_path,
                source_root=self.pipeline_path.resolve().parent,
            )
        repository = self.settings.registry_image or self.pipeline.image
        if not repository:
            raise ConfigError(
                "docker registry backend needs SHIPWRIGHT_REGISTRY_IMAGE or a pipeline 'image'"
            )
        return DockerArtifactRegistry(
            self._transport_factory(None),
            repository,
            registry_url=self.settings.registry_url,
            username=self.settings.registry_user,
            password=self.settings.registry_password,
        )

    def runtime_for(self, environment: EnvironmentDefinition) -> DockerRuntime:
        return DockerRuntime(self._transport_factory(environment), environment.host)

    def engine_for(self, environment: EnvironmentDefinition) -> RemoteApplyEngine:
        image = self.pipeline.image_for(environment)
        if not image:
            raise ConfigError(f"environment {environment.name!r} has no image")
        return RemoteApplyEngine(
            self.runtime_for(environment),
            self.registry,
            image=image,
            environment=environment.name,
            store=self.instance_store,
            restart_policy=environment.restart_policy,
            pull_images=self.settings.registry_backend == "docker",
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start(self, ctx: RunContext, *, run_id: str | None = None) -> RunResult:
        """Record a new run and execute it until it finishes or parks."""
        run_id = run_id or new_run_id()
        self.ledger.create_run(
            RunRecord(run_id=run_id, context=ctx, pipeline_path=str(self.pipeline_path.resolve()))
        )
        result = self.scheduler.run(self.graph, ctx, run_id=run_id)
        self.ledger.set_run_status(run_id, result.status.value)
        logger.info("run %s finished with status %s", run_id, result.status.value)
        return result

    def approve(self, job_name: str, run_id: str) -> RunResult:
        """Approve ``job_name`` in a parked run and continue it."""
        record = self.ledger.get_run(run_id)
        if record.status != RunStatus.PENDING_APPROVAL.value:
            raise ApprovalError(
                f"run {run_id} is {record.status}, not awaiting approval"
            )
        self.scheduler.restore(run_id, self.graph, record.context)
        self.scheduler.approve(job_name)
        self.ledger.set_run_status(run_id, RunStatus.RUNNING.value)
        result = self.scheduler.resume()
        self.ledger.set_run_status(run_id, result.status.value)
        logger.info("run %s resumed and ended with status %s", run_id, result.status.value)
        return result

    def instances(self, environment_name: str, *, reconcile: bool = False) -> list[Instance]:
        """Instances of an environment with their (optionally reconciled) keys."""
        try:
            environment = self.pipeline.environment(environment_name)
        except KeyError:
            raise ConfigError(
                f"unknown environment {environment_name!r}. "
                f"Known environments: {sorted(self.pipeline.environments)}"
            ) from None
        if reconcile:
            return self.instance_store.reconcile(environment, self.runtime_for(environment))
        return self.instance_store.known(environment)
