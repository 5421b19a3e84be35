"""
Test Runner
===========
Two phases, both must pass:
    unit        in the checkout root
    integration the external harness, run as its own process tree from a
                  dedicated sub-directory (``tests/`` by default)

No partial credit and no automatic retry. The integration harness only runs
after the unit phase passed.
"""
import os
import logging

from release_gate.core.constants import STAGE_TEST
from release_gate.executor.command_resolver import resolve_test_phases
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext
from release_gate.stages.stage_helpers import build_result, run_single_command_stage, utcnow

logger = logging.getLogger(__name__)


def phase_stage_name(phase: str) -> str:
    return f"{STAGE_TEST}:{phase}"


def run_tests(ctx: PipelineContext) -> list[StageResult]:
    """Run unit tests, then the integration harness."""
    results: list[StageResult] = []

    for phase_cmd in resolve_test_phases(ctx.ci):
        name = phase_stage_name(phase_cmd.phase)
        failure = StageFailure(kind=FailureKind.TEST, phase=phase_cmd.phase)
        cwd = os.path.join(ctx.workspace, phase_cmd.working_dir) if phase_cmd.working_dir else ctx.workspace

        if not os.path.isdir(cwd):
            results.append(build_result(
                ctx, name, utcnow(),
                failure=failure.model_copy(update={"message": f"working directory {cwd} does not exist"}),
            ))
            break

        logger.info("[TESTS] Phase %s: %s (cwd=%s)", phase_cmd.phase, phase_cmd.command, cwd)
        started = utcnow()
        try:
            result = run_single_command_stage(ctx, name, phase_cmd.command, failure, cwd=cwd)
        except Exception as e:
            logger.exception("[TESTS] Phase %s crashed", phase_cmd.phase)
            result = build_result(
                ctx, name, started,
                failure=failure.model_copy(update={"message": f"{type(e).__name__}: {e}"}),
            )
        results.append(result)
        if not result.succeeded:
            break

    return results
