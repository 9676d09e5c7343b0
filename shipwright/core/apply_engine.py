"""Remote Apply Engine: move one instance to a desired artifact.

Steps run in a fixed order and each is idempotent, so re-running a
partially applied instance converges:

    stop -> remove -> prepare -> start -> record

Stop always precedes start for the same instance.  There is no retry; a
failed step ends the apply and is reported with its name and cause.
"""

from __future__ import annotations

import logging

from shipwright.core.hasher import safe_name
from shipwright.core.instance_store import InstanceStore
from shipwright.core.registry import ArtifactNotFoundError, ArtifactRegistry, RegistryError
from shipwright.core.runtime import DockerRuntime, RuntimeCommandError
from shipwright.core.transport import TransportError
from shipwright.models.instances import ApplyResult, ApplyStatus, ApplyStep, Instance

logger = logging.getLogger(__name__)

_STEP_FAILURES = (RuntimeCommandError, TransportError, RegistryError)


class ApplyStepError(RuntimeError):
    """One apply step failed on one instance."""

    def __init__(self, step: ApplyStep, instance: str, cause: BaseException | str) -> None:
        self.step = step
        self.instance = instance
        self.cause = cause
        super().__init__(f"{step.value} failed on instance {instance}: {cause}")


class RemoteApplyEngine:
    """Drives ``DockerRuntime`` to bring instances to a desired artifact.

    Parameters
    ----------
    runtime:
        Runtime bound to the environment's host.
    registry:
        Consulted in the prepare step; a missing key fails the apply before
        anything is started.
    image:
        Image repository; the container image is ``<image>:<key>``.
    environment:
        Environment name, used when recording instance state.
    store:
        Instance Store updated after a confirmed start.  Optional.
    restart_policy:
        Docker restart policy for started containers.
    pull_images:
        Whether prepare runs ``docker pull`` on the host.  Off when images
        are built on the deployment host itself.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        registry: ArtifactRegistry,
        *,
        image: str,
        environment: str,
        store: InstanceStore | None = None,
        restart_policy: str = "unless-stopped",
        pull_images: bool = True,
    ) -> None:
        self._runtime = runtime
        self._registry = registry
        self._image = image
        self._environment = environment
        self._store = store
        self._restart_policy = restart_policy
        self._pull_images = pull_images

    def image_ref(self, artifact_key: str) -> str:
        return f"{self._image}:{safe_name(artifact_key)}"

    # ------------------------------------------------------------------
    # Individually exposed idempotent steps
    # ------------------------------------------------------------------

    def stop(self, instance: Instance) -> bool:
        """Stop the instance's container; ``False`` if it was not there."""
        return self._runtime.stop(instance.container_name)

    def remove(self, instance: Instance) -> bool:
        """Remove the instance's container; ``False`` if it was not there."""
        return self._runtime.remove(instance.container_name)

    # ------------------------------------------------------------------
    # Full apply
    # ------------------------------------------------------------------

    def apply_state(self, instance: Instance, desired_artifact_key: str) -> ApplyResult:
        """Run all five steps; returns a FAILED result naming the step on error."""
        completed: list[ApplyStep] = []
        steps = (
            (ApplyStep.STOP, lambda: self.stop(instance)),
            (ApplyStep.REMOVE, lambda: self.remove(instance)),
            (ApplyStep.PREPARE, lambda: self._prepare(desired_artifact_key)),
            (ApplyStep.START, lambda: self._start(instance, desired_artifact_key)),
            (ApplyStep.RECORD, lambda: self._record(instance, desired_artifact_key)),
        )
        logger.info(
            "applying %s to %s (%s on %s)",
            desired_artifact_key, instance.name, instance.container_name, self._runtime.host,
        )
        for step, action in steps:
            try:
                action()
            except ApplyStepError as exc:
                return self._failed(instance, desired_artifact_key, completed, exc)
            except _STEP_FAILURES as exc:
                error = ApplyStepError(step, instance.name, exc)
                return self._failed(instance, desired_artifact_key, completed, error)
            completed.append(step)

        logger.info("instance %s now runs %s", instance.name, desired_artifact_key)
        return ApplyResult(
            instance=instance.name,
            artifact_key=desired_artifact_key,
            status=ApplyStatus.SUCCESS,
            completed_steps=completed,
        )

    def _failed(
        self,
        instance: Instance,
        key: str,
        completed: list[ApplyStep],
        error: ApplyStepError,
    ) -> ApplyResult:
        logger.error("%s", error)
        return ApplyResult(
            instance=instance.name,
            artifact_key=key,
            status=ApplyStatus.FAILED,
            completed_steps=completed,
            failed_step=error.step,
            error=str(error),
        )

    def _prepare(self, key: str) -> None:
        if not self._registry.exists(key):
            raise ArtifactNotFoundError(key)
        if self._pull_images:
            self._runtime.pull(self.image_ref(key))

    def _start(self, instance: Instance, key: str) -> None:
        self._runtime.run(
            instance.container_name,
            self.image_ref(key),
            instance.host_binding.ports,
            self._restart_policy,
        )

    def _record(self, instance: Instance, key: str) -> None:
        if not self._runtime.is_running(instance.container_name):
            raise ApplyStepError(
                ApplyStep.RECORD, instance.name, "container is not running after start"
            )
        if self._store is not None:
            self._store.record(self._environment, instance, key)
