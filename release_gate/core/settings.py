"""
Pipeline Settings
=================
Per-repository pipeline configuration.

Defaults come from ``release_gate.core.config`` (environment / .env). A
``release-gate.yml`` at the checkout root, or an explicit ``--config`` file,
overrides them section by section:

    ci:
      lock_file: Cargo.lock
      gates:
        license: make check-license
        lint: make clippy
        format: make fmt
      unit_test_command: make test-ut
      integration_dir: tests
      integration_command: make run
    smoke:
      dockerfile: Dockerfile
      config_file: docs/minimal.toml
      readiness_strategy: poll
    triggers:
      smoke_paths: ["Dockerfile", "docker/**"]

Unknown keys are rejected so a typo never silently falls back to a default.
"""
import os
import logging
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from release_gate.core import config
from release_gate.core.constants import (
    CHECK_FORMAT,
    CHECK_LICENSE,
    CHECK_LINT,
    CI_IGNORE_PATHS,
    GATE_CHECKS,
    SMOKE_TRIGGER_PATHS,
    TRIGGER_BRANCHES,
)
from release_gate.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "release-gate.yml"


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CISettings(_StrictModel):
    lock_file: str = config.LOCK_FILE
    toolchain_file: str = config.TOOLCHAIN_FILE
    toolchain: Optional[str] = None              # overrides toolchain_file
    toolchain_profile: str = "minimal"
    toolchain_components: list[str] = ["clippy", "rustfmt"]

    cache_dir: str = config.CACHE_DIR
    cache_key_prefix: str = "debug"
    cache_paths: list[str] = ["~/.cargo", "target"]

    quota_release_paths: list[str] = ["/usr/local/lib/android", "/usr/share/dotnet"]
    quota_check_command: Optional[str] = "make ensure-disk-quota"
    min_free_disk_gb: float = config.MIN_FREE_DISK_GB

    gates: dict[str, str] = {
        CHECK_LICENSE: "make check-license",
        CHECK_LINT: "make clippy",
        CHECK_FORMAT: "make fmt",
    }
    unit_test_command: str = "make test-ut"
    integration_dir: str = "tests"
    integration_command: str = "make run"

    disk_usage_paths: list[str] = ["target"]
    timeout_minutes: float = config.PIPELINE_TIMEOUT_MINUTES
    env: dict[str, str] = Field(default_factory=lambda: dict(config.BUILD_ENV))

    @field_validator("gates")
    @classmethod
    def validate_gates(cls, v: dict[str, str]) -> dict[str, str]:
        unknown = set(v) - set(GATE_CHECKS)
        if unknown:
            raise ValueError(f"unknown quality gate check(s): {sorted(unknown)}")
        missing = [c for c in GATE_CHECKS if c not in v]
        if missing:
            raise ValueError(f"missing quality gate check(s): {missing}")
        return v

    @field_validator("timeout_minutes")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_minutes must be positive")
        return v


class SmokeSettings(_StrictModel):
    dockerfile: str = "Dockerfile"
    build_context: str = "."
    image_name: str = config.IMAGE_NAME
    server_name: str = config.SERVER_NAME
    server_addr: str = config.SERVER_ADDR
    server_port: int = config.SERVER_PORT

    config_file: str = "docs/minimal.toml"
    config_mount_path: str = "/etc/ceresdb/ceresdb.toml"

    readiness_strategy: str = config.READINESS_STRATEGY
    settle_delay_seconds: float = config.SETTLE_DELAY_SECONDS
    readiness_timeout_seconds: float = config.READINESS_TIMEOUT_SECONDS
    health_path: str = "/"

    probe_command: str = "bash ./docker/basic.sh"
    probe_env: dict[str, str] = {}
    timeout_minutes: float = config.PIPELINE_TIMEOUT_MINUTES

    @field_validator("readiness_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        if v not in ("settle", "poll"):
            raise ValueError("readiness_strategy must be 'settle' or 'poll'")
        return v

    @field_validator("server_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("server_port must be between 1 and 65535")
        return v


class TriggerSettings(_StrictModel):
    branches: list[str] = list(TRIGGER_BRANCHES)
    ci_ignore_paths: list[str] = list(CI_IGNORE_PATHS)
    smoke_paths: list[str] = list(SMOKE_TRIGGER_PATHS)


class PipelineSettings(_StrictModel):
    """Complete configuration for one checkout."""
    workspace: str = "."
    log_dir: str = config.LOG_DIR
    results_dir: str = config.RESULTS_DIR
    ci: CISettings = Field(default_factory=CISettings)
    smoke: SmokeSettings = Field(default_factory=SmokeSettings)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)


def load_settings(workspace: str, config_path: Optional[str] = None) -> PipelineSettings:
    """
    Build the settings for a checkout.

    Parameters
    ----------
    workspace : str
        Checkout root.
    config_path : str | None
        Explicit YAML file. If None, ``release-gate.yml`` in the workspace is
        used when present; otherwise defaults apply.

    Raises
    ------
    ConfigError
        If the file is unreadable, is not a mapping, or fails validation.
    """
    workspace = os.path.abspath(workspace)
    path = config_path or os.path.join(workspace, DEFAULT_CONFIG_NAME)
    data: dict = {}

    if config_path or os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config {path} must be a mapping, got {type(loaded).__name__}")
        data = loaded
        logger.info("Loaded pipeline config from %s", path)

    data = dict(data)
    data["workspace"] = workspace

    try:
        return PipelineSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline config {path}: {e}") from e
