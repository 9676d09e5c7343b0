"""Unit tests for RemoteApplyEngine — the five idempotent apply steps."""

from __future__ import annotations

import pytest

from shipwright.core.apply_engine import RemoteApplyEngine
from shipwright.core.instance_store import InstanceStore
from shipwright.core.runtime import DockerRuntime
from shipwright.core.transport import TransportError
from shipwright.models.instances import ApplyStatus, ApplyStep

COMMIT = "3f9c2a7b1d4e5f60718293a4b5c6d7e8f9012345"
IMAGE = "registry.example.com/appster"


class _UnreachableHost:
    def exec(self, target, command, *, allow_non_zero=False, env=None):
        raise TransportError(f"ssh to {target} failed: Connection timed out")


@pytest.fixture
def store(tmp_dir) -> InstanceStore:
    return InstanceStore(tmp_dir / "state.db")


@pytest.fixture
def environment(make_environment):
    return make_environment()


@pytest.fixture
def engine(fake_host, registry, store, environment) -> RemoteApplyEngine:
    return RemoteApplyEngine(
        DockerRuntime(fake_host, environment.host),
        registry,
        image=IMAGE,
        environment=environment.name,
        store=store,
    )


class TestApplyState:
    def test_fresh_instance(self, engine, registry, fake_host, store, environment):
        registry.push(COMMIT, b"bundle")
        blue = environment.instance("blue")

        result = engine.apply_state(blue, COMMIT)

        assert result.status == ApplyStatus.SUCCESS
        assert result.completed_steps == list(ApplyStep)
        assert fake_host.containers["appster-blue"]["image"] == f"{IMAGE}:{COMMIT}"
        assert store.current_key(environment.name, "blue") == COMMIT

    def test_steps_run_in_order(self, engine, registry, fake_host, environment):
        registry.push(COMMIT, b"bundle")
        engine.apply_state(environment.instance("blue"), COMMIT)
        verbs = [c.split()[1] for c in fake_host.commands]
        assert verbs == ["stop", "rm", "pull", "run", "inspect"]

    def test_replaces_running_container(self, engine, registry, fake_host, environment):
        registry.push(COMMIT, b"bundle")
        fake_host.containers["appster-blue"] = {"image": f"{IMAGE}:old1234", "running": True}
        result = engine.apply_state(environment.instance("blue"), COMMIT)
        assert result.ok
        assert fake_host.containers["appster-blue"]["image"] == f"{IMAGE}:{COMMIT}"

    def test_reapply_converges(self, engine, registry, fake_host, environment):
        registry.push(COMMIT, b"bundle")
        blue = environment.instance("blue")
        assert engine.apply_state(blue, COMMIT).ok
        assert engine.apply_state(blue, COMMIT).ok
        assert len(fake_host.containers) == 1

    def test_missing_artifact_fails_before_start(self, engine, fake_host, store, environment):
        result = engine.apply_state(environment.instance("blue"), COMMIT)
        assert result.status == ApplyStatus.FAILED
        assert result.failed_step == ApplyStep.PREPARE
        assert result.completed_steps == [ApplyStep.STOP, ApplyStep.REMOVE]
        assert not any(c.startswith("docker run") for c in fake_host.commands)
        assert store.current_key(environment.name, "blue") is None

    def test_start_failure_names_step(self, engine, registry, fake_host, environment):
        registry.push(COMMIT, b"bundle")
        fake_host.fail["docker run"] = (125, "Bind for 0.0.0.0:81 failed: port is already allocated")
        result = engine.apply_state(environment.instance("blue"), COMMIT)
        assert result.failed_step == ApplyStep.START
        assert "start failed on instance blue" in result.error
        assert "port is already allocated" in result.error

    def test_container_exits_after_start(self, engine, registry, fake_host, store, environment):
        registry.push(COMMIT, b"bundle")
        fake_host.not_running_after_start.add("appster-blue")
        result = engine.apply_state(environment.instance("blue"), COMMIT)
        assert result.failed_step == ApplyStep.RECORD
        assert store.current_key(environment.name, "blue") is None

    def test_unreachable_host(self, registry, environment):
        engine = RemoteApplyEngine(
            DockerRuntime(_UnreachableHost(), environment.host),
            registry, image=IMAGE, environment=environment.name,
        )
        result = engine.apply_state(environment.instance("blue"), COMMIT)
        assert result.failed_step == ApplyStep.STOP
        assert "Connection timed out" in result.error


class TestIndividualSteps:
    def test_stop_and_remove_twice(self, engine, fake_host, environment):
        blue = environment.instance("blue")
        fake_host.containers["appster-blue"] = {"image": "x", "running": True}
        assert engine.stop(blue) is True
        assert engine.stop(blue) is True  # stopped containers still exist
        assert engine.remove(blue) is True
        assert engine.stop(blue) is False
        assert engine.remove(blue) is False

    def test_image_ref_sanitizes_key(self, engine):
        assert engine.image_ref("feature/x") == f"{IMAGE}:feature-x"

    def test_no_pull_when_disabled(self, fake_host, registry, environment):
        registry.push(COMMIT, b"bundle")
        engine = RemoteApplyEngine(
            DockerRuntime(fake_host, environment.host),
            registry, image=IMAGE, environment=environment.name, pull_images=False,
        )
        assert engine.apply_state(environment.instance("blue"), COMMIT).ok
        assert not any(c.startswith("docker pull") for c in fake_host.commands)
