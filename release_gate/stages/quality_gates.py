"""
Quality Gate Runner
===================
Runs the static-quality checks in fixed order: license -> lint -> format.

Fail-fast: the first failing check stops the runner and is reported by name;
remaining checks are not run to aggregate further failures.
"""
import logging

from release_gate.core.constants import STAGE_QUALITY_GATE
from release_gate.executor.command_resolver import resolve_gate_checks
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext
from release_gate.stages.stage_helpers import build_result, run_single_command_stage, utcnow

logger = logging.getLogger(__name__)


def gate_stage_name(check: str) -> str:
    return f"{STAGE_QUALITY_GATE}:{check}"


def run_quality_gates(ctx: PipelineContext) -> list[StageResult]:
    """
    Run every gate check until one fails.

    Returns
    -------
    list[StageResult]
        One result per check that ran; the last one is the failure, if any.
    """
    results: list[StageResult] = []
    checks = resolve_gate_checks(ctx.ci)

    for i, check in enumerate(checks, 1):
        logger.info("[GATES] Check %d/%d: %s", i, len(checks), check.name)
        name = gate_stage_name(check.name)
        failure = StageFailure(kind=FailureKind.QUALITY_GATE, check=check.name)
        started = utcnow()
        try:
            result = run_single_command_stage(ctx, name, check.command, failure)
        except Exception as e:
            logger.exception("[GATES] %s check crashed", check.name)
            result = build_result(
                ctx, name, started,
                failure=failure.model_copy(update={"message": f"{type(e).__name__}: {e}"}),
            )
        results.append(result)
        if not result.succeeded:
            logger.error("[GATES] %s check failed, skipping remaining checks", check.name)
            break

    return results
