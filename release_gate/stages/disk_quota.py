"""
Disk Quota Precondition
=======================
Release step + assertion step run before any build work.

Release: best-effort removal of large directories the build host does not
need (preinstalled SDKs). Nothing here can fail the pipeline.

Assertion: an optional built-in free-space check followed by the repository's
own assertion command (``make ensure-disk-quota``). Failure aborts the run
before a build can run out of disk halfway and leave partial state behind.
"""
import os
import shutil
import logging

from release_gate.core.constants import STAGE_DISK_QUOTA
from release_gate.executor.process_runner import write_log
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext
from release_gate.stages.stage_helpers import (
    build_result,
    classify,
    run_stage_command,
    utcnow,
)

logger = logging.getLogger(__name__)

_GB = 1024 ** 3


def release_disk_quota(paths: list[str]) -> int:
    """
    Remove ``paths`` if present.

    Returns
    -------
    int
        Number of paths actually removed.
    """
    removed = 0
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            removed += 1
            logger.info("Released disk quota: removed %s", path)
        except OSError as e:
            logger.warning("Could not release %s: %s", path, e)
    return removed


def free_disk_gb(path: str) -> float:
    return shutil.disk_usage(path).free / _GB


def check_disk_quota(ctx: PipelineContext) -> StageResult:
    """Release space, then assert enough is left to build."""
    started = utcnow()
    failure = StageFailure(kind=FailureKind.QUOTA)

    release_disk_quota(ctx.ci.quota_release_paths)

    if ctx.ci.min_free_disk_gb > 0:
        free = free_disk_gb(ctx.workspace)
        message = f"free disk {free:.1f} GB, required {ctx.ci.min_free_disk_gb:.1f} GB"
        write_log(ctx.log_path(STAGE_DISK_QUOTA), ">>> built-in quota check\n", message)
        if free < ctx.ci.min_free_disk_gb:
            return build_result(
                ctx, STAGE_DISK_QUOTA, started,
                failure=failure.model_copy(update={"message": message}),
                log_excerpt=message,
            )
        logger.info("Disk quota OK: %s", message)

    if not ctx.ci.quota_check_command:
        return build_result(ctx, STAGE_DISK_QUOTA, started)

    execution = run_stage_command(ctx, STAGE_DISK_QUOTA, ctx.ci.quota_check_command)
    return build_result(
        ctx, STAGE_DISK_QUOTA, started,
        execution=execution,
        failure=classify(execution, failure, STAGE_DISK_QUOTA),
    )


def report_disk_usage(ctx: PipelineContext) -> None:
    """Log build output size and free space; runs whether the pipeline passed or not."""
    for rel in ctx.ci.disk_usage_paths:
        path = ctx.resolve_path(rel)
        if not os.path.exists(path):
            continue
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError:
                    continue
        logger.info("Disk usage: %s = %.2f GB", path, total / _GB)

    usage = shutil.disk_usage(ctx.workspace)
    logger.info(
        "Disk usage: total=%.1f GB used=%.1f GB free=%.1f GB",
        usage.total / _GB, usage.used / _GB, usage.free / _GB,
    )
