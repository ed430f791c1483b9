"""
Unit Tests — Configuration
==========================
Pipeline YAML loading, validation and defaults.
"""
import textwrap

import pytest

from cicd_engine.core.config import ConfigError, EngineConfig, load_engine_config


def _write(tmp_path, text):
    path = tmp_path / "pipeline.yml"
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return str(path)


def test_missing_file_uses_defaults(tmp_path):
    config = load_engine_config(str(tmp_path / "absent.yml"))
    assert [s.name for s in config.stage_definitions] == [
        "checkout", "build", "test", "quality", "package", "deploy", "notify",
    ]
    assert config.deployment_targets == []
    assert config.stage_definitions[-1].kind == "notify"


def test_loads_stages_targets_and_sinks(tmp_path):
    path = _write(tmp_path, """
        agent_pool_capacity: 4
        debounce_window_seconds: 1.5
        stage_definitions:
          - {name: notify, ordinal: 9, kind: notify}
          - {name: checkout, ordinal: 1, kind: checkout, retryable: true}
          - {name: build, ordinal: 2, command: "npm ci && npm run build", timeout_seconds: 300}
          - name: lint
            ordinal: 3
            kind: quality
            command: npm run lint
            failure_policy: CONTINUE_WITH_WARNING
        deployment_targets:
          - environment_name: staging
            strategy_kind: ssh
            connection_parameters: {host: staging.internal}
            branches: [main]
          - environment_name: production
            strategy_kind: codedeploy
            connection_parameters: {application_name: shop, deployment_group: prod}
            health_check_url: https://shop.example.com/healthz
        notification_sinks:
          - {kind: commit_status}
          - {kind: webhook, url: "https://chat.example.com/hook"}
    """)
    config = load_engine_config(path)

    assert config.agent_pool_capacity == 4
    assert config.debounce_window_seconds == 1.5
    assert [s.name for s in config.stage_definitions] == ["checkout", "build", "lint", "notify"]
    assert config.stage_definitions[2].failure_policy == "CONTINUE_WITH_WARNING"
    staging = config.target("staging")
    assert staging.accepts_ref("main") and not staging.accepts_ref("feature/x")
    production = config.target("production")
    assert production.health_check_attempts == 10
    assert production.health_check_interval_seconds == 5.0
    assert config.target("qa") is None
    assert [s.kind for s in config.notification_sinks] == ["commit_status", "webhook"]


def test_overrides_win_over_file(tmp_path):
    path = _write(tmp_path, "agent_pool_capacity: 4\n")
    config = load_engine_config(path, overrides={"agent_pool_capacity": 1})
    assert config.agent_pool_capacity == 1


def test_invalid_yaml(tmp_path):
    path = _write(tmp_path, "stage_definitions: [unclosed\n")
    with pytest.raises(ConfigError):
        load_engine_config(path)


def test_top_level_must_be_mapping(tmp_path):
    path = _write(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_engine_config(path)


def test_notify_must_be_last(tmp_path):
    path = _write(tmp_path, """
        stage_definitions:
          - {name: notify, ordinal: 1, kind: notify}
          - {name: build, ordinal: 2}
    """)
    with pytest.raises(ConfigError, match="notify"):
        load_engine_config(path)


def test_notify_required(tmp_path):
    path = _write(tmp_path, """
        stage_definitions:
          - {name: build, ordinal: 1}
    """)
    with pytest.raises(ConfigError):
        load_engine_config(path)


def test_duplicate_stage_names(tmp_path):
    path = _write(tmp_path, """
        stage_definitions:
          - {name: build, ordinal: 1}
          - {name: build, ordinal: 2}
          - {name: notify, ordinal: 3, kind: notify}
    """)
    with pytest.raises(ConfigError, match="unique"):
        load_engine_config(path)


def test_duplicate_environments(tmp_path):
    path = _write(tmp_path, """
        deployment_targets:
          - {environment_name: prod, strategy_kind: ssh}
          - {environment_name: prod, strategy_kind: container}
    """)
    with pytest.raises(ConfigError, match="unique"):
        load_engine_config(path)


def test_unknown_strategy_kind(tmp_path):
    path = _write(tmp_path, """
        deployment_targets:
          - {environment_name: prod, strategy_kind: ftp}
    """)
    with pytest.raises(ConfigError):
        load_engine_config(path)


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        EngineConfig(agent_pool_capacity=0)
