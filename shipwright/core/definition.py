"""Pipeline Definition Loader: ``shipwright.yml`` -> PipelineDefinition + JobGraph.

Every problem in the file is reported as ``ConfigError`` before any job
runs.  Unknown keys are rejected rather than ignored, so a typo in a gate
(``onyl:``) cannot silently widen when a job runs.

Example::

    image: registry.example.com/appster
    stages: [build, test, push, deploy, {name: clean_up, always: true}]
    environments:
      staging:
        host: staging.example.com
        instances:
          staging: {container: appster-staging, ports: ["81:80"]}
    jobs:
      deploy_staging:
        stage: deploy
        only: [master]
        deploy: staging
"""

from __future__ import annotations

import logging
import string
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from shipwright.core.job_graph import ConfigError, JobGraph
from shipwright.models.context import RunContext
from shipwright.models.instances import EnvironmentDefinition, HostBinding, Instance
from shipwright.models.jobs import Command, Gate, JobDefinition, StageDefinition
from shipwright.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_FILE = "shipwright.yml"

_TOP_LEVEL_KEYS = frozenset({"image", "variables", "stages", "environments", "jobs"})
_STAGE_KEYS = frozenset({"name", "always"})
_ENVIRONMENT_KEYS = frozenset(
    {"host", "user", "strategy", "image", "restart_policy", "instances"}
)
_INSTANCE_KEYS = frozenset({"container", "host", "ports"})
_JOB_KEYS = frozenset({
    "stage", "script", "only", "except", "when", "allow_failure", "needs",
    "requires_artifact", "variables", "publish", "promote", "deploy",
})
_COMMAND_KEYS = frozenset({"run", "allow_non_zero", "target"})

# Placeholders allowed in publish/promote values.
TEMPLATE_FIELDS = frozenset(
    RunContext(commit_sha="0", ref_name="x").template_vars()
) | {"image"}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def load_pipeline(path: Path | str) -> PipelineDefinition:
    """Read and validate a pipeline file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read pipeline file {path}: {exc}") from exc
    logger.debug("Loading pipeline from %s", path)
    return parse_pipeline(text, source=str(path))


def parse_pipeline(text: str, *, source: str = "<string>") -> PipelineDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping")
    return pipeline_from_dict(data, source=source)


def build_graph(pipeline: PipelineDefinition) -> JobGraph:
    """Insert every job in declaration order and check the result."""
    graph = JobGraph(pipeline.stages)
    for job in pipeline.jobs:
        graph.add_job(job)
    graph.validate()
    return graph


def load(path: Path | str) -> tuple[PipelineDefinition, JobGraph]:
    pipeline = load_pipeline(path)
    return pipeline, build_graph(pipeline)


# ---------------------------------------------------------------------------
# Dict -> models
# ---------------------------------------------------------------------------


def _check_keys(where: str, data: Any, allowed: frozenset[str]) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(data).__name__}")
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        raise ConfigError(
            f"{where}: unknown field(s) {unknown}. Allowed: {sorted(allowed)}"
        )
    return data


def _as_list(where: str, value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        return [value]
    if isinstance(value, list):
        return value
    raise ConfigError(f"{where}: expected a string or a list")


def _stage(index: int, raw: Any) -> StageDefinition:
    if isinstance(raw, str):
        return StageDefinition(name=raw)
    data = _check_keys(f"stages[{index}]", raw, _STAGE_KEYS)
    return StageDefinition(**data)


def _instances(env_name: str, host: str, raw: Any) -> list[Instance]:
    where = f"environments.{env_name}.instances"
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for i, entry in enumerate(raw):
            entry = dict(_check_keys(f"{where}[{i}]", entry, _INSTANCE_KEYS | {"name"}))
            if "name" not in entry:
                raise ConfigError(f"{where}[{i}]: missing 'name'")
            items.append((entry.pop("name"), entry))
    else:
        raise ConfigError(f"{where}: expected a mapping of instance name to settings")

    instances = []
    for name, settings in items:
        settings = _check_keys(f"{where}.{name}", settings or {}, _INSTANCE_KEYS)
        instances.append(Instance(
            name=str(name),
            container_name=settings.get("container", str(name)),
            host_binding=HostBinding(
                host=settings.get("host", host),
                ports=_as_list(f"{where}.{name}.ports", settings.get("ports")),
            ),
        ))
    return instances


def _environment(name: str, raw: Any) -> EnvironmentDefinition:
    data = dict(_check_keys(f"environments.{name}", raw, _ENVIRONMENT_KEYS))
    host = data.get("host", "localhost")
    data["instances"] = _instances(name, host, data.get("instances"))
    return EnvironmentDefinition(name=name, **data)


def _command(where: str, raw: Any) -> Command:
    if isinstance(raw, str):
        return Command(run=raw)
    return Command(**_check_keys(where, raw, _COMMAND_KEYS))


def _job(name: str, raw: Any) -> JobDefinition:
    where = f"jobs.{name}"
    data = _check_keys(where, raw, _JOB_KEYS)
    if "stage" not in data:
        raise ConfigError(f"{where}: missing 'stage'")
    commands = [
        _command(f"{where}.script[{i}]", item)
        for i, item in enumerate(_as_list(f"{where}.script", data.get("script")))
    ]
    gate = Gate(
        only=[str(p) for p in _as_list(f"{where}.only", data.get("only"))],
        **{"except": [str(p) for p in _as_list(f"{where}.except", data.get("except"))]},
    )
    fields = {
        k: v for k, v in data.items()
        if k not in ("script", "only", "except")
    }
    if "variables" in fields:
        fields["variables"] = {str(k): str(v) for k, v in (fields["variables"] or {}).items()}
    fields["needs"] = [str(n) for n in _as_list(f"{where}.needs", data.get("needs"))]
    return JobDefinition(name=name, commands=commands, gate=gate, **fields)


def _check_templates(job: JobDefinition) -> None:
    for field_name in ("publish", "promote"):
        value = getattr(job, field_name)
        if not value:
            continue
        try:
            names = {f for _, f, _, _ in string.Formatter().parse(value) if f is not None}
        except ValueError as exc:
            raise ConfigError(f"jobs.{job.name}.{field_name}: {exc}") from exc
        unknown = sorted(names - TEMPLATE_FIELDS)
        if unknown:
            raise ConfigError(
                f"jobs.{job.name}.{field_name}: unknown placeholder(s) {unknown}. "
                f"Allowed: {sorted(TEMPLATE_FIELDS)}"
            )


def pipeline_from_dict(data: dict[str, Any], *, source: str = "<dict>") -> PipelineDefinition:
    """Validate a decoded pipeline mapping.

    Parameters
    ----------
    data:
        The decoded YAML document.
    source:
        Used as the prefix of error messages.
    """
    try:
        _check_keys(source, data, _TOP_LEVEL_KEYS)
        stages = [_stage(i, s) for i, s in enumerate(_as_list("stages", data.get("stages")))]
        raw_envs = data.get("environments") or {}
        if not isinstance(raw_envs, dict):
            raise ConfigError("environments: expected a mapping")
        environments = {str(n): _environment(str(n), e) for n, e in raw_envs.items()}
        raw_jobs = data.get("jobs") or {}
        if not isinstance(raw_jobs, dict):
            raise ConfigError("jobs: expected a mapping of job name to settings")
        jobs = [_job(str(n), j) for n, j in raw_jobs.items()]
        pipeline = PipelineDefinition(
            image=data.get("image"),
            variables={str(k): str(v) for k, v in (data.get("variables") or {}).items()},
            stages=stages,
            environments=environments,
            jobs=jobs,
        )
    except ValidationError as exc:
        raise ConfigError(f"{source}: {exc}") from exc
    except ConfigError as exc:
        if str(exc).startswith(source):
            raise
        raise ConfigError(f"{source}: {exc}") from exc

    _check_references(pipeline, source)
    return pipeline


def _check_references(pipeline: PipelineDefinition, source: str) -> None:
    """Cross-field checks pydantic cannot see: environments and templates."""
    known = sorted(pipeline.environments)
    for job in pipeline.jobs:
        _check_templates(job)
        targets = [c.target for c in job.commands if c.target]
        if job.deploy:
            targets.append(job.deploy)
        for target in targets:
            if target not in pipeline.environments:
                raise ConfigError(
                    f"{source}: job {job.name!r} targets unknown environment "
                    f"{target!r}. Known environments: {known}"
                )
        if job.deploy and not pipeline.image_for(pipeline.environment(job.deploy)):
            raise ConfigError(
                f"{source}: job {job.name!r} deploys to {job.deploy!r} but neither "
                "the environment nor the pipeline sets 'image'"
            )
