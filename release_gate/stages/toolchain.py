"""
Toolchain Provisioner
=====================
Ensures the pinned compiler toolchain is installed with a minimal profile,
plus the lint and formatter components.

Idempotent: if the installer already lists the toolchain, the install step is
skipped; component adds are no-ops for an already-present component.

Failure is fatal with no retry: a broken installer means the environment
itself is unusable.
"""
import logging

from release_gate.core.constants import STAGE_PROVISION
from release_gate.executor.command_resolver import (
    read_toolchain_file,
    resolve_toolchain_commands,
)
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext
from release_gate.stages.stage_helpers import (
    build_result,
    classify,
    run_stage_command,
    utcnow,
)

logger = logging.getLogger(__name__)


def is_toolchain_installed(listing: str, toolchain: str) -> bool:
    """
    Check ``rustup toolchain list`` output for ``toolchain``.

    Entries look like ``nightly-2022-08-08-x86_64-unknown-linux-gnu (default)``,
    so the pinned id matches an entry exactly or as a prefix followed by the
    host triple.
    """
    for line in listing.splitlines():
        name = line.strip().split(" ")[0] if line.strip() else ""
        if name == toolchain or name.startswith(f"{toolchain}-"):
            return True
    return False


def provision_toolchain(ctx: PipelineContext) -> StageResult:
    """Install the pinned toolchain and its components."""
    started = utcnow()
    failure = StageFailure(kind=FailureKind.PROVISIONING)

    toolchain = ctx.ci.toolchain or read_toolchain_file(ctx.toolchain_path)
    if not toolchain:
        return build_result(
            ctx, STAGE_PROVISION, started,
            failure=failure.model_copy(update={
                "message": f"no toolchain pinned (set ci.toolchain or create {ctx.ci.toolchain_file})",
            }),
        )

    commands = resolve_toolchain_commands(
        toolchain, ctx.ci.toolchain_profile, ctx.ci.toolchain_components,
    )
    logger.info("Provisioning toolchain %s", toolchain)

    execution = run_stage_command(ctx, STAGE_PROVISION, commands.disable_self_update)
    outcome = classify(execution, failure, STAGE_PROVISION)
    if outcome:
        return build_result(ctx, STAGE_PROVISION, started, execution=execution, failure=outcome)

    listing = run_stage_command(ctx, STAGE_PROVISION, commands.list_command)
    if listing.succeeded and is_toolchain_installed(listing.full_log, toolchain):
        logger.info("Toolchain %s already installed, skipping install", toolchain)
    else:
        execution = run_stage_command(ctx, STAGE_PROVISION, commands.install_command)
        outcome = classify(execution, failure, STAGE_PROVISION)
        if outcome:
            return build_result(ctx, STAGE_PROVISION, started, execution=execution, failure=outcome)

    for component_command in commands.component_commands:
        execution = run_stage_command(ctx, STAGE_PROVISION, component_command)
        outcome = classify(execution, failure, STAGE_PROVISION)
        if outcome:
            return build_result(ctx, STAGE_PROVISION, started, execution=execution, failure=outcome)

    return build_result(ctx, STAGE_PROVISION, started, execution=execution)
