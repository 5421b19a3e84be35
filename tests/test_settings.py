"""
Unit Tests: Pipeline Settings
==============================
Defaults, YAML overrides, and validation failures surfacing as ConfigError.
"""
import pytest

from release_gate.core.errors import ConfigError
from release_gate.core.settings import DEFAULT_CONFIG_NAME, PipelineSettings, load_settings


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(str(tmp_path))
    assert settings.workspace == str(tmp_path)
    assert settings.ci.lock_file == "Cargo.lock"
    assert settings.ci.gates == {
        "license": "make check-license",
        "lint": "make clippy",
        "format": "make fmt",
    }
    assert settings.ci.integration_dir == "tests"
    assert settings.ci.toolchain_components == ["clippy", "rustfmt"]
    assert settings.smoke.config_mount_path == "/etc/ceresdb/ceresdb.toml"
    assert settings.smoke.probe_command == "bash ./docker/basic.sh"


def test_yaml_in_workspace_overrides_defaults(tmp_path):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text(
        "ci:\n"
        "  unit_test_command: cargo test --workspace\n"
        "  timeout_minutes: 30\n"
        "smoke:\n"
        "  server_port: 8831\n"
        "  readiness_strategy: poll\n"
    )
    settings = load_settings(str(tmp_path))
    assert settings.ci.unit_test_command == "cargo test --workspace"
    assert settings.ci.timeout_minutes == 30
    assert settings.smoke.server_port == 8831
    assert settings.smoke.readiness_strategy == "poll"
    # untouched sections keep defaults
    assert settings.ci.lock_file == "Cargo.lock"


def test_explicit_config_path(tmp_path):
    cfg = tmp_path / "custom.yml"
    cfg.write_text("ci:\n  lock_file: Cargo.lock.custom\n")
    settings = load_settings(str(tmp_path), str(cfg))
    assert settings.ci.lock_file == "Cargo.lock.custom"


def test_empty_yaml_uses_defaults(tmp_path):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text("")
    assert load_settings(str(tmp_path)).ci.lock_file == "Cargo.lock"


def test_missing_explicit_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path), str(tmp_path / "missing.yml"))


def test_invalid_yaml_raises(tmp_path):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text("ci: [unclosed\n")
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path))


def test_non_mapping_raises(tmp_path):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path))


def test_unknown_key_rejected(tmp_path):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text("ci:\n  lokc_file: typo.lock\n")
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path))


@pytest.mark.parametrize("body", [
    "smoke:\n  readiness_strategy: guess\n",
    "smoke:\n  server_port: 70000\n",
    "ci:\n  timeout_minutes: 0\n",
    "ci:\n  gates:\n    license: 'true'\n    lint: 'true'\n",
    "ci:\n  gates:\n    license: 'true'\n    lint: 'true'\n    format: 'true'\n    typos: 'true'\n",
])
def test_invalid_values_rejected(tmp_path, body):
    (tmp_path / DEFAULT_CONFIG_NAME).write_text(body)
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path))


def test_settings_model_defaults_are_independent():
    a = PipelineSettings()
    b = PipelineSettings()
    a.ci.env["EXTRA"] = "1"
    assert "EXTRA" not in b.ci.env
