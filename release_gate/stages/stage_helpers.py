"""
Stage Helpers
=============
Shared glue between the Process Runner and StageResult.

Every stage follows the same contract: run one or more commands, capture the
output to the stage log, and turn the outcome into a frozen StageResult whose
failure (if any) carries the stage's own classification, except when the
run's time budget ran out, which is always classified as a timeout.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from release_gate.executor.process_runner import (
    ExecutionResult,
    create_log_excerpt,
    run_command,
)
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext, SmokeContext

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def run_stage_command(
    ctx: PipelineContext,
    stage_name: str,
    command: str,
    cwd: Optional[str] = None,
) -> ExecutionResult:
    """Run ``command`` for ``stage_name`` with the run's remaining budget as timeout."""
    return run_command(
        command,
        cwd=cwd or ctx.workspace,
        timeout_seconds=ctx.timeout_for_stage(),
        env=ctx.env,
        log_path=ctx.log_path(stage_name),
    )


def timeout_failure(stage_name: str) -> StageFailure:
    return StageFailure(
        kind=FailureKind.TIMEOUT,
        message=f"pipeline time budget exhausted during {stage_name}",
    )


def classify(
    execution: ExecutionResult,
    failure: StageFailure,
    stage_name: str,
) -> Optional[StageFailure]:
    """Pick the failure for a finished execution (None if it succeeded)."""
    if execution.timed_out:
        return timeout_failure(stage_name)
    if execution.succeeded:
        return None
    if execution.error and not failure.message:
        return failure.model_copy(update={"message": execution.error})
    return failure


def build_result(
    ctx: Union[PipelineContext, SmokeContext],
    stage_name: str,
    started_at: datetime,
    execution: Optional[ExecutionResult] = None,
    failure: Optional[StageFailure] = None,
    log_excerpt: str = "",
    skipped: bool = False,
) -> StageResult:
    """Freeze the outcome of a stage."""
    excerpt = log_excerpt or (execution.log_excerpt if execution else "")
    log_path = ctx.log_path(stage_name)
    result = StageResult(
        name=stage_name,
        started_at=started_at,
        finished_at=utcnow(),
        exit_code=execution.exit_code if execution else (1 if failure else 0),
        output_path=log_path if os.path.exists(log_path) else None,
        log_excerpt=create_log_excerpt(excerpt),
        failure=failure,
        skipped=skipped,
    )
    if failure:
        logger.error("Stage %s FAILED: %s", stage_name, failure.describe())
    else:
        logger.info("Stage %s passed (%.2fs)", stage_name, result.duration_seconds)
    return result


def run_single_command_stage(
    ctx: PipelineContext,
    stage_name: str,
    command: str,
    failure: StageFailure,
    cwd: Optional[str] = None,
) -> StageResult:
    """Run one command and classify a non-zero exit as ``failure``."""
    started = utcnow()
    execution = run_stage_command(ctx, stage_name, command, cwd=cwd)
    return build_result(
        ctx, stage_name, started,
        execution=execution,
        failure=classify(execution, failure, stage_name),
    )
