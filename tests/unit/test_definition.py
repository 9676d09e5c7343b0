"""Unit tests for the pipeline definition loader."""

from __future__ import annotations

import textwrap

import pytest

from shipwright.core import definition
from shipwright.core.job_graph import ConfigError, CyclicDependencyError
from shipwright.models.instances import RolloutStrategy
from shipwright.models.jobs import WhenPolicy

VALID = """
image: registry.example.com/appster
variables:
  REGISTRY: registry.example.com
stages:
  - build
  - test
  - deploy
  - name: clean_up
    always: true
environments:
  production:
    host: prod.example.com
    user: deploy
    strategy: fixed_set
    instances:
      blue: {container: appster-blue, ports: ["81:80", "8081:8080"]}
      green: {container: appster-green, ports: ["82:80", "8082:8080"]}
  staging:
    host: staging.example.com
    instances:
      - name: staging
        container: appster-staging
        ports: ["81:80"]
jobs:
  build_image:
    stage: build
    script: docker build -t appster:build .
    publish: "{image}:{commit_sha}"
  test_conf:
    stage: test
    requires_artifact: true
    script:
      - docker run --rm appster:build nginx -t
      - run: docker image ls
        allow_non_zero: true
  deploy_prod:
    stage: deploy
    only: master
    when: manual
    deploy: production
  clean_up:
    stage: clean_up
    when: always
    script:
      - docker system prune -f
"""


def _parse(text: str):
    return definition.parse_pipeline(textwrap.dedent(text), source="test.yml")


class TestParsing:
    def test_valid_pipeline(self):
        pipeline = _parse(VALID)
        assert [s.name for s in pipeline.stages] == ["build", "test", "deploy", "clean_up"]
        assert pipeline.stages[-1].always
        assert [j.name for j in pipeline.jobs] == [
            "build_image", "test_conf", "deploy_prod", "clean_up",
        ]

    def test_environments(self):
        pipeline = _parse(VALID)
        production = pipeline.environment("production")
        assert production.strategy == RolloutStrategy.FIXED_SET
        assert production.user == "deploy"
        blue = production.instance("blue")
        assert blue.container_name == "appster-blue"
        assert blue.host_binding.host == "prod.example.com"
        assert [str(p) for p in blue.host_binding.ports] == ["81:80", "8081:8080"]
        # list form
        staging = pipeline.environment("staging")
        assert staging.strategy == RolloutStrategy.SEQUENTIAL
        assert staging.instance("staging").container_name == "appster-staging"

    def test_jobs(self):
        jobs = {j.name: j for j in _parse(VALID).jobs}
        assert jobs["build_image"].commands[0].run.startswith("docker build")
        assert jobs["test_conf"].commands[1].allow_non_zero
        assert jobs["deploy_prod"].when == WhenPolicy.MANUAL
        assert jobs["deploy_prod"].gate.only == ["master"]
        assert jobs["clean_up"].runs_always

    def test_graph_from_file(self, tmp_dir):
        path = tmp_dir / "shipwright.yml"
        path.write_text(VALID)
        pipeline, graph = definition.load(path)
        assert len(graph) == len(pipeline.jobs)
        assert graph.stage_of("clean_up").always


class TestErrors:
    def test_missing_file(self, tmp_dir):
        with pytest.raises(ConfigError, match="cannot read"):
            definition.load(tmp_dir / "missing.yml")

    def test_invalid_yaml(self):
        with pytest.raises(ConfigError, match="invalid YAML"):
            _parse("stages: [build\njobs: {")

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ConfigError, match="mapping"):
            _parse("- build\n- test\n")

    def test_unknown_job_key(self):
        text = VALID.replace("    only: master", "    onyl: master")
        with pytest.raises(ConfigError, match="onyl"):
            _parse(text)

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigError, match="unknown field"):
            _parse(VALID + "\ncache: true\n")

    def test_missing_stage(self):
        with pytest.raises(ConfigError, match="missing 'stage'"):
            _parse("stages: [build]\njobs:\n  a:\n    script: ['true']\n")

    def test_pydantic_errors_become_config_errors(self):
        with pytest.raises(ConfigError, match="test.yml"):
            _parse("stages: [build]\njobs:\n  a:\n    stage: build\n")

    def test_unknown_environment(self):
        text = VALID.replace("deploy: production", "deploy: prodution")
        with pytest.raises(ConfigError, match="unknown environment 'prodution'"):
            _parse(text)

    def test_unknown_placeholder(self):
        text = VALID.replace("{image}:{commit_sha}", "{image}:{sha}")
        with pytest.raises(ConfigError, match="placeholder"):
            _parse(text)

    def test_deploy_needs_an_image(self):
        text = VALID.replace("image: registry.example.com/appster\n", "", 1)
        with pytest.raises(ConfigError, match="image"):
            _parse(text)

    def test_duplicate_ports(self):
        text = VALID.replace('ports: ["82:80", "8082:8080"]', 'ports: ["81:80"]')
        with pytest.raises(ConfigError, match="both bind"):
            _parse(text)

    def test_cycle_detected_at_build(self):
        pipeline = _parse("""
            stages: [test]
            jobs:
              a: {stage: test, script: ["true"], needs: [b]}
              b: {stage: test, script: ["true"], needs: [a]}
        """)
        with pytest.raises(CyclicDependencyError):
            definition.build_graph(pipeline)

    def test_unknown_need(self):
        pipeline = _parse("""
            stages: [test]
            jobs:
              a: {stage: test, script: ["true"], needs: [ghost]}
        """)
        with pytest.raises(ConfigError, match="ghost"):
            definition.build_graph(pipeline)
