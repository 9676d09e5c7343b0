"""Rollout Coordinator: apply one artifact across an environment's instances.

Strategies:
- ``sequential``: in order; the first failure halts the rollout and the
  remaining instances are reported ``not_attempted``.
- ``fixed_set``: every instance in declared order; a failure on one does
  not stop the others.

Instances are always applied one at a time, so an environment is never
taken down all at once.  A partially failed rollout is not rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from shipwright.core.apply_engine import RemoteApplyEngine
from shipwright.core.registry import ArtifactNotFoundError, ArtifactRegistry
from shipwright.models.instances import (
    ApplyResult,
    ApplyStatus,
    EnvironmentDefinition,
    RolloutResult,
    RolloutStatus,
    RolloutStrategy,
)

logger = logging.getLogger(__name__)

EngineFactory = Callable[[EnvironmentDefinition], RemoteApplyEngine]


def overall_status(results: dict[str, ApplyResult]) -> RolloutStatus:
    """``failed`` if every attempted apply failed, ``partial_failure`` if some did."""
    attempted = [r for r in results.values() if r.status != ApplyStatus.NOT_ATTEMPTED]
    failed = [r for r in attempted if r.status == ApplyStatus.FAILED]
    if not failed:
        return RolloutStatus.SUCCESS
    if len(failed) == len(attempted):
        return RolloutStatus.FAILED
    return RolloutStatus.PARTIAL_FAILURE


class RolloutCoordinator:
    """Sequences ``RemoteApplyEngine.apply_state`` calls for an environment.

    Parameters
    ----------
    registry:
        Checked once before any instance is touched.
    engine_factory:
        Builds the apply engine for an environment (its host, image and
        restart policy).
    """

    def __init__(self, registry: ArtifactRegistry, engine_factory: EngineFactory) -> None:
        self._registry = registry
        self._engine_factory = engine_factory

    def rollout(self, environment: EnvironmentDefinition, artifact_key: str) -> RolloutResult:
        """Deploy ``artifact_key`` to every instance of ``environment``.

        Raises ``ArtifactNotFoundError`` before touching any instance when
        the registry does not have the key.
        """
        if not self._registry.exists(artifact_key):
            raise ArtifactNotFoundError(
                artifact_key, f"refusing to roll out to {environment.name}"
            )

        engine = self._engine_factory(environment)
        results: dict[str, ApplyResult] = {}
        halted = False
        logger.info(
            "rolling out %s to %s (%s, %d instances)",
            artifact_key, environment.name, environment.strategy.value,
            len(environment.instances),
        )

        for instance in environment.instances:
            if halted:
                results[instance.name] = ApplyResult(
                    instance=instance.name,
                    artifact_key=artifact_key,
                    status=ApplyStatus.NOT_ATTEMPTED,
                )
                continue
            result = engine.apply_state(instance, artifact_key)
            results[instance.name] = result
            if not result.ok and environment.strategy == RolloutStrategy.SEQUENTIAL:
                logger.warning(
                    "sequential rollout to %s halted at %s", environment.name, instance.name
                )
                halted = True

        status = overall_status(results)
        logger.info("rollout to %s finished: %s", environment.name, status.value)
        return RolloutResult(
            environment=environment.name,
            artifact_key=artifact_key,
            strategy=environment.strategy,
            status=status,
            instances=results,
        )
