"""
Pipeline Run Model
Pydantic model tracking one execution of the CI or smoke pipeline.

Lifecycle: pending -> running -> succeeded | failed. A run is terminal once
every stage has been recorded or the first failure has been recorded.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .container_instance import ContainerInstance
from .stage_result import FailureKind, StageFailure, StageResult


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TriggerReason(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRun(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    pipeline: str = "ci"                  # ci / smoke
    trigger: TriggerReason = TriggerReason.MANUAL
    workspace: str = ""
    status: RunStatus = RunStatus.PENDING
    stages: List[StageResult] = []
    failure: Optional[StageFailure] = None
    failed_stage: Optional[str] = None
    timed_out: bool = False
    containers: List[ContainerInstance] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    def start(self) -> None:
        self.status = RunStatus.RUNNING
        self.started_at = _utcnow()

    def record(self, result: StageResult) -> bool:
        """
        Append a stage result.

        Returns
        -------
        bool
            True if the pipeline may continue, False if this stage failed.
            The first failure is kept as the run's failure; later records
            (teardown after a failed probe) never replace it.
        """
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.status.value}")
        self.stages.append(result)
        if result.failure is None:
            return True
        if self.failure is None:
            self.failure = result.failure
            self.failed_stage = result.name
            if result.failure.kind == FailureKind.TIMEOUT:
                self.timed_out = True
        return False

    def finish(self) -> None:
        self.status = RunStatus.FAILED if self.failure else RunStatus.SUCCEEDED
        self.finished_at = _utcnow()

    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]

    def summary(self) -> str:
        """One-line human summary naming the first failing stage."""
        if self.status == RunStatus.SUCCEEDED:
            return f"{self.pipeline} run {self.run_id} succeeded ({len(self.stages)} stages)"
        if self.failure is None:
            return f"{self.pipeline} run {self.run_id} is {self.status.value}"
        msg = f"{self.pipeline} run {self.run_id} failed at stage '{self.failed_stage}': {self.failure.describe()}"
        if self.failure.message:
            msg += f" ({self.failure.message})"
        return msg
