"""Unit tests for PipelineJobRunner: commands, actions and failure mapping."""

from __future__ import annotations

import pytest

from shipwright.core import definition
from shipwright.core.apply_engine import RemoteApplyEngine
from shipwright.core.executor import JobRunner, PipelineJobRunner, expand
from shipwright.core.registry import LocalArtifactRegistry
from shipwright.core.rollout import RolloutCoordinator
from shipwright.core.runtime import DockerRuntime
from shipwright.core.transport import TransportError
from shipwright.models.instances import RolloutStatus
from shipwright.models.jobs import JobState

COMMIT = "3f9c2a7b1d4e5f60718293a4b5c6d7e8f9012345"

PIPELINE = """
image: registry.example.com/appster
variables:
  SITE: appster
  LEVEL: pipeline
stages: [build, test, push, deploy]
environments:
  production:
    host: prod.example.com
    strategy: fixed_set
    instances:
      blue: {container: appster-blue, ports: ["81:80"]}
      green: {container: appster-green, ports: ["82:80"]}
jobs:
  build_site:
    stage: build
    script:
      - make site
    publish: dist/site.tar
  unit:
    stage: test
    requires_artifact: true
    variables:
      LEVEL: job
    script:
      - make test
      - make report
  lint:
    stage: test
    script:
      - run: make lint
        allow_non_zero: true
  remote_check:
    stage: test
    script:
      - run: docker ps
        target: production
  push_latest:
    stage: push
    promote: latest
  push_tag:
    stage: push
    promote: "{ref_name}"
  deploy_prod:
    stage: deploy
    deploy: production
"""


class _BrokenTransport:
    def exec(self, target, command, *, allow_non_zero=False, env=None):
        raise TransportError("cannot execute on localhost: No such file or directory")


@pytest.fixture
def pipeline():
    return definition.parse_pipeline(PIPELINE)


@pytest.fixture
def registry(tmp_dir) -> LocalArtifactRegistry:
    (tmp_dir / "dist").mkdir()
    (tmp_dir / "dist" / "site.tar").write_bytes(b"site")
    return LocalArtifactRegistry(tmp_dir / "registry", source_root=tmp_dir)


@pytest.fixture
def runner(pipeline, registry, fake_host) -> PipelineJobRunner:
    def engine_for(environment):
        return RemoteApplyEngine(
            DockerRuntime(fake_host, environment.host),
            registry,
            image=pipeline.image_for(environment),
            environment=environment.name,
        )

    return PipelineJobRunner(
        pipeline,
        transport_factory=lambda environment: fake_host,
        registry=registry,
        coordinator=RolloutCoordinator(registry, engine_for),
        base_env={"SHIPWRIGHT_REGISTRY_PASSWORD": "hunter2"},
        secrets=("hunter2",),
    )


def _job(pipeline, name):
    return next(j for j in pipeline.jobs if j.name == name)


class TestCommands:
    def test_satisfies_protocol(self, runner):
        assert isinstance(runner, JobRunner)

    def test_env_layers(self, runner, pipeline, registry, fake_host, master_ctx):
        registry.push(COMMIT, b"site")
        result = runner.run_job(_job(pipeline, "unit"), master_ctx)
        assert result.state == JobState.SUCCESS
        env = fake_host.envs[0]
        assert env["SHIPWRIGHT_COMMIT_SHA"] == COMMIT
        assert env["SITE"] == "appster"
        assert env["LEVEL"] == "job"
        assert env["SHIPWRIGHT_IMAGE"] == "registry.example.com/appster"
        assert env["SHIPWRIGHT_REGISTRY_PASSWORD"] == "hunter2"

    def test_failed_command_stops_job(self, runner, pipeline, registry, fake_host, master_ctx):
        registry.push(COMMIT, b"site")
        fake_host.fail["make test"] = (2, "3 tests failed")

        result = runner.run_job(_job(pipeline, "unit"), master_ctx)

        assert result.state == JobState.FAILED
        assert result.exit_code == 2
        assert "'make test' exited 2: 3 tests failed" in result.reason
        assert "make report" not in fake_host.commands

    def test_tolerated_non_zero(self, runner, pipeline, fake_host, master_ctx):
        fake_host.fail["make lint"] = (1, "style nits")
        result = runner.run_job(_job(pipeline, "lint"), master_ctx)
        assert result.state == JobState.SUCCESS

    def test_target_routes_to_environment_host(self, runner, pipeline, fake_host, master_ctx):
        runner.run_job(_job(pipeline, "remote_check"), master_ctx)
        assert fake_host.calls == [("prod.example.com", "docker ps")]

    def test_required_artifact_missing(self, runner, pipeline, fake_host, master_ctx):
        result = runner.run_job(_job(pipeline, "unit"), master_ctx)
        assert result.state == JobState.FAILED
        assert "artifact not found" in result.reason
        assert fake_host.calls == []

    def test_transport_failure(self, pipeline, registry, master_ctx):
        runner = PipelineJobRunner(
            pipeline,
            transport_factory=lambda environment: _BrokenTransport(),
            registry=registry,
            coordinator=RolloutCoordinator(registry, lambda env: None),
        )
        result = runner.run_job(_job(pipeline, "lint"), master_ctx)
        assert result.state == JobState.FAILED
        assert "cannot execute" in result.reason

    def test_secrets_redacted_from_result(self, runner, pipeline, fake_host, master_ctx):
        fake_host.stdout["make lint"] = "logging in with hunter2\n"
        result = runner.run_job(_job(pipeline, "lint"), master_ctx)
        assert "hunter2" not in result.output
        assert "***" in result.output


class TestActions:
    def test_publish_pushes_commit_key(self, runner, pipeline, registry, master_ctx):
        result = runner.run_job(_job(pipeline, "build_site"), master_ctx)
        assert result.state == JobState.SUCCESS
        assert registry.exists(COMMIT)
        assert "published" in result.reason

    def test_promote_latest(self, runner, pipeline, registry, master_ctx):
        registry.push(COMMIT, b"site")
        result = runner.run_job(_job(pipeline, "push_latest"), master_ctx)
        assert result.state == JobState.SUCCESS
        assert registry.resolve("latest").key == COMMIT

    def test_promote_release_tag(self, runner, pipeline, registry, tag_ctx):
        registry.push(COMMIT, b"site")
        runner.run_job(_job(pipeline, "push_tag"), tag_ctx)
        assert registry.resolve("v1.2.3").key == COMMIT

    def test_promote_without_artifact(self, runner, pipeline, registry, master_ctx):
        result = runner.run_job(_job(pipeline, "push_latest"), master_ctx)
        assert result.state == JobState.FAILED
        assert registry.aliases() == []

    def test_deploy_success(self, runner, pipeline, registry, fake_host, master_ctx):
        registry.push(COMMIT, b"site")
        result = runner.run_job(_job(pipeline, "deploy_prod"), master_ctx)
        assert result.state == JobState.SUCCESS
        assert result.rollout.status == RolloutStatus.SUCCESS
        assert set(fake_host.containers) == {"appster-blue", "appster-green"}

    def test_partial_rollout_degrades_job(self, runner, pipeline, registry, fake_host, master_ctx):
        registry.push(COMMIT, b"site")
        fake_host.fail["--name appster-green "] = (125, "port is already allocated")
        result = runner.run_job(_job(pipeline, "deploy_prod"), master_ctx)
        assert result.state == JobState.DEGRADED
        assert "blue=success" in result.reason
        assert "green=failed" in result.reason

    def test_failed_rollout_fails_job(self, runner, pipeline, registry, fake_host, master_ctx):
        registry.push(COMMIT, b"site")
        fake_host.fail["docker run"] = (125, "port is already allocated")
        result = runner.run_job(_job(pipeline, "deploy_prod"), master_ctx)
        assert result.state == JobState.FAILED


class TestExpand:
    def test_placeholders(self, tag_ctx):
        assert expand("{image}:{ref_name}", tag_ctx, "repo/app") == "repo/app:v1.2.3"
        assert expand("{short_sha}", tag_ctx) == COMMIT[:8]
