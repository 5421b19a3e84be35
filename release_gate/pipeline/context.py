"""
Pipeline Context
================
Resource handles owned by a single pipeline run.

Everything a stage touches (checkout, lock file, cache, log directory, the
remaining time budget) is passed in explicitly through a PipelineContext
instead of module-level globals, so stages can be exercised in isolation and
two runs never share mutable state except the content-addressed cache.
"""
import os
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from release_gate.core.settings import CISettings, PipelineSettings, SmokeSettings
from release_gate.services.cache_service import DependencyCache


class Deadline:
    """Hard wall-clock budget for one run, measured on the monotonic clock."""

    def __init__(self, seconds: float, clock=time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass
class PipelineContext:
    """Handles for one CI pipeline run."""
    run_id: str
    settings: PipelineSettings
    deadline: Deadline
    cache: DependencyCache
    env: dict[str, str] = field(default_factory=dict)

    @property
    def ci(self) -> CISettings:
        return self.settings.ci

    @property
    def workspace(self) -> str:
        return self.settings.workspace

    @property
    def lock_path(self) -> str:
        return os.path.join(self.workspace, self.ci.lock_file)

    @property
    def toolchain_path(self) -> str:
        return os.path.join(self.workspace, self.ci.toolchain_file)

    def resolve_path(self, path: str) -> str:
        """Expand ``~`` and anchor relative paths at the checkout root."""
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.join(self.workspace, path)

    def log_path(self, stage_name: str) -> str:
        """File that captures the tool output of ``stage_name``."""
        safe = _UNSAFE_NAME.sub("_", stage_name)
        return os.path.join(self.resolve_path(self.settings.log_dir), self.run_id, f"{safe}.log")

    def timeout_for_stage(self) -> Optional[float]:
        """Remaining budget handed to the next subprocess as its timeout."""
        return self.deadline.remaining()


@dataclass
class SmokeContext:
    """Handles for one container smoke pipeline run."""
    run_id: str
    settings: PipelineSettings
    deadline: Deadline

    @property
    def smoke(self) -> SmokeSettings:
        return self.settings.smoke

    @property
    def workspace(self) -> str:
        return self.settings.workspace

    def resolve_path(self, path: str) -> str:
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.join(self.workspace, path)

    def log_path(self, stage_name: str) -> str:
        safe = _UNSAFE_NAME.sub("_", stage_name)
        return os.path.join(self.resolve_path(self.settings.log_dir), self.run_id, f"{safe}.log")

    def probe_env(self) -> dict[str, str]:
        """
        Environment the smoke probe relies on.

        ``docker/basic.sh`` reads CERESDB_ADDR / CERESDB_PORT; the SERVER_*
        names are exported too as generic aliases.
        """
        addr, port = self.smoke.server_addr, str(self.smoke.server_port)
        env = {
            "CERESDB_ADDR": addr,
            "CERESDB_PORT": port,
            "SERVER_ADDR": addr,
            "SERVER_PORT": port,
            "IMAGE_NAME": self.smoke.image_name,
            "SERVER_NAME": self.smoke.server_name,
        }
        env.update(self.smoke.probe_env)
        return env
