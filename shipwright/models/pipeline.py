"""Validated pipeline definition (the parsed form of ``shipwright.yml``)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from shipwright.models.instances import EnvironmentDefinition
from shipwright.models.jobs import JobDefinition, StageDefinition


class PipelineDefinition(BaseModel):
    """Stages, jobs and deployment environments of one pipeline.

    Jobs keep their declaration order, which is the tie-break for
    deterministic scheduling inside a stage.
    """

    model_config = ConfigDict(frozen=True)

    image: str | None = None
    variables: dict[str, str] = {}
    stages: list[StageDefinition]
    environments: dict[str, EnvironmentDefinition] = {}
    jobs: list[JobDefinition]

    def environment(self, name: str) -> EnvironmentDefinition:
        return self.environments[name]

    def image_for(self, environment: EnvironmentDefinition) -> str | None:
        return environment.image or self.image
