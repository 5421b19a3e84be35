"""
Stage Result Model
==================
Pydantic models for the outcome of one pipeline stage.

StageFailure is a tagged variant: ``kind`` selects the failure class and the
optional ``check`` / ``phase`` fields carry its payload:

    provisioning        — toolchain install or workspace preparation (lock backup) failed
    quota               — disk quota assertion failed before any build work
    quality_gate{check} — license / lint / format check failed
    test{phase}         — unit or integration phase failed
    lock_drift          — lock file changed while tests ran
    image_build         — container image build failed
    container_start     — container could not be started or never became ready
    probe               — smoke probe exited non-zero
    timeout             — the run's wall-clock budget ran out mid-stage

StageResult is frozen: once a stage is recorded it never changes.

Fields:
    name          — stage identifier, e.g. "quality-gate:lint"
    started_at    — UTC start time
    finished_at   — UTC end time
    exit_code     — process exit code, 0 on success, -1 when nothing ran
    output_path   — captured tool output on disk (None if nothing captured)
    log_excerpt   — head/tail of the captured output for quick display
    failure       — StageFailure when the stage failed
    skipped       — True when the stage deliberately did nothing (e.g. cache hit)
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class FailureKind(str, Enum):
    PROVISIONING = "provisioning"
    QUOTA = "quota"
    QUALITY_GATE = "quality_gate"
    TEST = "test"
    LOCK_DRIFT = "lock_drift"
    IMAGE_BUILD = "image_build"
    CONTAINER_START = "container_start"
    PROBE = "probe"
    TIMEOUT = "timeout"


class StageFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    check: Optional[str] = None
    phase: Optional[str] = None
    message: str = ""

    def describe(self) -> str:
        """Short classification, e.g. ``quality_gate{license}``."""
        detail = self.check or self.phase
        if detail:
            return f"{self.kind.value}{{{detail}}}"
        return self.kind.value


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    started_at: datetime
    finished_at: datetime
    exit_code: int = 0
    output_path: Optional[str] = None
    log_excerpt: str = ""
    failure: Optional[StageFailure] = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def duration_seconds(self) -> float:
        return round((self.finished_at - self.started_at).total_seconds(), 3)
