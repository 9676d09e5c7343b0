"""End-to-end integration tests: the bundled ``shipwright.yml`` against a fake docker host.

These tests exercise the Orchestrator, StageScheduler, JobMachine, RunLedger,
DockerArtifactRegistry, RolloutCoordinator and RemoteApplyEngine working
together, the way a master push, an approval and a release tag drive them.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from shipwright.config import ShipwrightSettings
from shipwright.core.orchestrator import Orchestrator
from shipwright.models.instances import ApplyStatus
from shipwright.models.jobs import JobState
from shipwright.models.runs import RunStatus

PIPELINE = Path(__file__).parents[2] / "shipwright.yml"
IMAGE = "registry.gitlab.f5.local/f5-demo-lab/appster"
PROD_CONTAINERS = {"appster-blue", "appster-yellow", "appster-green", "appster-red"}


@pytest.fixture
def settings(tmp_dir) -> ShipwrightSettings:
    return ShipwrightSettings(
        state_dir=tmp_dir / "state", registry_backend="docker", _env_file=None
    )


@pytest.fixture
def orchestrator(settings, fake_host) -> Orchestrator:
    return Orchestrator(
        PIPELINE, settings=settings, transport_factory=lambda environment: fake_host
    )


def _approve(settings, fake_host, job_name: str = "deploy_prod"):
    resumed, record = Orchestrator.for_run(
        settings=settings, transport_factory=lambda environment: fake_host
    )
    return resumed, resumed.approve(job_name, record.run_id)


class TestMasterPush:
    """Build, test, publish, promote ``latest``, deploy staging, park at production."""

    def test_parks_at_production_deploy(self, orchestrator, fake_host, master_ctx):
        result = orchestrator.start(master_ctx, run_id="run-1")

        assert result.status == RunStatus.PENDING_APPROVAL
        assert result.pending_approvals == ["deploy_prod"]
        for name in ("build_nginx_container", "test_nginx_conf", "push_latest", "deploy_staging"):
            assert result.job(name).state == JobState.SUCCESS, name
        assert result.job("push_tag").state == JobState.SKIPPED
        assert result.job("clean_up").state == JobState.CREATED

        assert f"docker push {IMAGE}:{master_ctx.commit_sha}" in fake_host.commands
        assert f"docker push {IMAGE}:latest" in fake_host.commands
        assert set(fake_host.containers) == {"appster-staging"}
        assert fake_host.containers["appster-staging"]["image"] == f"{IMAGE}:{master_ctx.commit_sha}"

    def test_build_tolerates_missing_latest(self, orchestrator, fake_host, master_ctx):
        fake_host.fail["docker pull \"$SHIPWRIGHT_IMAGE:latest\""] = (1, "manifest unknown")
        result = orchestrator.start(master_ctx, run_id="run-1")
        assert result.job("build_nginx_container").state == JobState.SUCCESS

    def test_approval_deploys_every_production_instance(self, orchestrator, settings, fake_host, master_ctx):
        orchestrator.start(master_ctx, run_id="run-1")
        resumed, result = _approve(settings, fake_host)

        assert result.status == RunStatus.SUCCESS
        assert result.job("deploy_prod").state == JobState.SUCCESS
        assert result.job("clean_up").state == JobState.SUCCESS
        assert set(fake_host.containers) == PROD_CONTAINERS | {"appster-staging"}
        assert "docker system prune -f" in fake_host.commands

        keys = {i.name: i.current_artifact_key for i in resumed.instances("production")}
        assert keys == dict.fromkeys(("blue", "yellow", "green", "red"), master_ctx.commit_sha)

    def test_build_is_not_repeated_on_resume(self, orchestrator, settings, fake_host, master_ctx):
        orchestrator.start(master_ctx, run_id="run-1")
        builds = sum(1 for c in fake_host.commands if c.startswith("docker build"))
        _approve(settings, fake_host)
        assert sum(1 for c in fake_host.commands if c.startswith("docker build")) == builds == 1

    def test_port_clash_degrades_the_run(self, orchestrator, settings, fake_host, master_ctx):
        orchestrator.start(master_ctx, run_id="run-1")
        fake_host.fail["-p 82:80"] = (125, "Bind for 0.0.0.0:82 failed: port is already allocated")
        _, result = _approve(settings, fake_host)

        assert result.status == RunStatus.DEGRADED
        deploy = result.job("deploy_prod")
        assert deploy.state == JobState.DEGRADED
        statuses = {name: r.status for name, r in deploy.rollout.instances.items()}
        assert statuses["green"] == ApplyStatus.FAILED
        assert [statuses[n] for n in ("blue", "yellow", "red")] == [ApplyStatus.SUCCESS] * 3
        assert "appster-green" not in fake_host.containers
        # Clean-up still runs after a partial rollout.
        assert result.job("clean_up").state == JobState.SUCCESS

    def test_ledger_survives_for_status(self, orchestrator, settings, fake_host, master_ctx):
        orchestrator.start(master_ctx, run_id="run-1")
        resumed, _ = _approve(settings, fake_host)
        states = resumed.machine.get_all_states("run-1")
        assert states["deploy_prod"] == JobState.SUCCESS
        assert states["push_tag"] == JobState.SKIPPED


class TestReleaseTag:
    def test_tag_promotes_release_without_deploying(self, orchestrator, fake_host, tag_ctx):
        result = orchestrator.start(tag_ctx, run_id="run-tag")

        assert result.status == RunStatus.SUCCESS
        assert result.job("push_tag").state == JobState.SUCCESS
        assert result.job("push_latest").state == JobState.SKIPPED
        assert result.job("deploy_staging").state == JobState.SKIPPED
        assert result.job("deploy_prod").state == JobState.SKIPPED
        assert f"docker push {IMAGE}:v1.2.3" in fake_host.commands
        assert f"docker push {IMAGE}:latest" not in fake_host.commands
        assert fake_host.containers == {}


class TestFailures:
    def test_build_failure_only_runs_clean_up(self, orchestrator, fake_host, master_ctx):
        fake_host.fail["docker build"] = (1, "failed to solve: nginx.conf not found")
        result = orchestrator.start(master_ctx, run_id="run-1")

        assert result.status == RunStatus.FAILED
        assert result.job("build_nginx_container").state == JobState.FAILED
        assert "nginx.conf not found" in result.job("build_nginx_container").reason
        for name in ("test_nginx_conf", "push_latest", "deploy_staging", "deploy_prod"):
            assert result.job(name).state == JobState.SKIPPED, name
        assert result.job("clean_up").state == JobState.SUCCESS
        assert not any(c.startswith("docker push") for c in fake_host.commands)
        assert fake_host.containers == {}
        assert orchestrator.ledger.get_run("run-1").status == "failed"

    def test_crossplane_failure_is_tolerated(self, orchestrator, fake_host, master_ctx):
        fake_host.fail["crossplane parse"] = (1, "parse error")
        result = orchestrator.start(master_ctx, run_id="run-1")

        assert result.job("test_crossplane_nginx_conf").state == JobState.FAILED
        assert result.job("deploy_staging").state == JobState.SUCCESS
        assert result.status == RunStatus.PENDING_APPROVAL
