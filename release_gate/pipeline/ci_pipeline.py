"""
CI Pipeline
===========
Drives the verification pipeline for one checkout:

    provision -> cache-restore -> disk-quota
      -> quality-gate:license -> quality-gate:lint -> quality-gate:format
      -> test:unit -> test:integration
      -> lock-drift
      -> cache-save (success only)

Core properties:
    - Strictly sequential, fail-fast: the first failing stage ends the run and
      is surfaced as ``PipelineRun.failed_stage`` / ``PipelineRun.failure``.
    - The lock file is snapshotted right after the disk quota check, before
      any stage that can build, and compared after the tests passed.
    - The cache is saved only when every stage succeeded; a failed save is a
      warning, not a failure (the cache is an optimisation).
    - A hard wall-clock deadline bounds the run. Each subprocess gets the
      remaining budget; when it runs out the current stage is killed and the
      run is reported failed with ``timed_out=True``.
    - Disk usage is reported whether the run passed or not.
    - Stages never raise for expected failures; an unexpected exception inside
      a stage is logged and classified under that stage's failure kind.
"""
import logging
from typing import Callable, Optional

from release_gate.core.constants import (
    STAGE_CACHE_RESTORE,
    STAGE_CACHE_SAVE,
    STAGE_DISK_QUOTA,
    STAGE_LOCK_DRIFT,
    STAGE_LOCK_SNAPSHOT,
    STAGE_PROVISION,
    STAGE_QUALITY_GATE,
    STAGE_TEST,
)
from release_gate.core.settings import PipelineSettings
from release_gate.models.cache_entry import CacheEntry
from release_gate.models.pipeline_run import PipelineRun, TriggerReason
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import Deadline, PipelineContext
from release_gate.services.cache_service import DependencyCache, compute_cache_key
from release_gate.stages.disk_quota import check_disk_quota, report_disk_usage
from release_gate.stages.lock_drift import LockSnapshot, check_lock_drift, snapshot_lock_file
from release_gate.stages.quality_gates import run_quality_gates
from release_gate.stages.stage_helpers import build_result, timeout_failure, utcnow
from release_gate.stages.testing import run_tests
from release_gate.stages.toolchain import provision_toolchain

logger = logging.getLogger(__name__)


class CIPipeline:
    """
    Sequential, fail-fast verification pipeline.

    Usage:
        pipeline = CIPipeline(load_settings("/src/checkout"))
        run = pipeline.run(trigger=TriggerReason.PUSH)
        if run.status != RunStatus.SUCCEEDED:
            print(run.summary())
    """

    def __init__(self, settings: PipelineSettings, cache: Optional[DependencyCache] = None) -> None:
        self.settings = settings
        self.cache = cache or DependencyCache(settings.ci.cache_dir)

    def _context(self, run: PipelineRun) -> PipelineContext:
        return PipelineContext(
            run_id=run.run_id,
            settings=self.settings,
            deadline=Deadline(self.settings.ci.timeout_minutes * 60),
            cache=self.cache,
            env=dict(self.settings.ci.env),
        )

    # ------------------------------------------------------------------
    # Stage wrappers
    # ------------------------------------------------------------------
    def _guard(
        self,
        ctx: PipelineContext,
        stage_name: str,
        kind: FailureKind,
        fn: Callable[[], list[StageResult]],
    ) -> list[StageResult]:
        """Run a stage, enforcing the deadline and converting crashes into results."""
        if ctx.deadline.expired():
            return [build_result(ctx, stage_name, utcnow(), failure=timeout_failure(stage_name))]
        started = utcnow()
        try:
            return fn()
        except Exception as e:
            logger.exception("Unexpected error in stage %s", stage_name)
            return [build_result(
                ctx, stage_name, started,
                failure=StageFailure(kind=kind, message=f"{type(e).__name__}: {e}"),
            )]

    def _cache_paths(self, ctx: PipelineContext) -> list[str]:
        return [ctx.resolve_path(p) for p in ctx.ci.cache_paths]

    def _restore_cache(self, ctx: PipelineContext) -> tuple[StageResult, CacheEntry]:
        started = utcnow()
        key, restore_keys = compute_cache_key(
            ctx.toolchain_path, ctx.lock_path, prefix=ctx.ci.cache_key_prefix,
        )
        paths = self._cache_paths(ctx)
        try:
            entry = self.cache.restore(key, restore_keys, paths, root=ctx.workspace)
        except Exception as e:
            # unreadable archive: continue with a cold build
            logger.warning("Cache restore failed for %s, continuing with empty cache: %s", key, e)
            entry = CacheEntry(key=key, restore_keys=restore_keys, paths=paths)
        excerpt = f"key={key} matched={entry.matched_key or 'none'}"
        return build_result(ctx, STAGE_CACHE_RESTORE, started, log_excerpt=excerpt), entry

    def _save_cache(self, ctx: PipelineContext, entry: CacheEntry) -> StageResult:
        started = utcnow()
        if entry.exact_hit:
            logger.info("Cache hit on primary key %s, not saving", entry.key)
            return build_result(
                ctx, STAGE_CACHE_SAVE, started,
                log_excerpt=f"exact hit on {entry.key}, save skipped", skipped=True,
            )
        try:
            archive = self.cache.save(entry.key, entry.paths, root=ctx.workspace)
        except Exception as e:
            logger.warning("Cache save failed for %s (run still succeeds): %s", entry.key, e)
            return build_result(
                ctx, STAGE_CACHE_SAVE, started,
                log_excerpt=f"cache save failed: {e}", skipped=True,
            )
        return build_result(
            ctx, STAGE_CACHE_SAVE, started,
            log_excerpt=f"saved {entry.key}" if archive else "nothing to save",
            skipped=archive is None,
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------
    def run(
        self,
        trigger: TriggerReason = TriggerReason.MANUAL,
        run: Optional[PipelineRun] = None,
    ) -> PipelineRun:
        """
        Execute the full pipeline.

        Parameters
        ----------
        trigger : TriggerReason
            Why the run was started.
        run : PipelineRun | None
            Pre-registered run to fill in (used by the API so callers can
            poll it while it executes). A new one is created if None.

        Returns
        -------
        PipelineRun
            Always returned in a terminal state.
        """
        run = run or PipelineRun(pipeline="ci", trigger=trigger)
        run.pipeline = "ci"
        run.trigger = trigger
        run.workspace = self.settings.workspace
        ctx = self._context(run)
        run.start()
        logger.info("[CI] Run %s started (trigger=%s, workspace=%s, budget=%.0fs)",
                    run.run_id, trigger.value, ctx.workspace, ctx.deadline.seconds)

        try:
            self._execute(ctx, run)
        finally:
            try:
                report_disk_usage(ctx)
            except OSError as e:
                logger.warning("Disk usage report failed: %s", e)
            run.finish()
            logger.info("[CI] %s", run.summary())

        return run

    def _execute(self, ctx: PipelineContext, run: PipelineRun) -> None:
        def record_all(results: list[StageResult]) -> bool:
            for result in results:
                if not run.record(result):
                    return False
            return True

        # 1. Provision toolchain
        if not record_all(self._guard(
            ctx, STAGE_PROVISION, FailureKind.PROVISIONING,
            lambda: [provision_toolchain(ctx)],
        )):
            return

        # 2. Restore dependency cache (never fails the run)
        if ctx.deadline.expired():
            record_all([build_result(ctx, STAGE_CACHE_RESTORE, utcnow(),
                                     failure=timeout_failure(STAGE_CACHE_RESTORE))])
            return
        restore_result, cache_entry = self._restore_cache(ctx)
        run.record(restore_result)

        # 3. Disk quota precondition
        if not record_all(self._guard(
            ctx, STAGE_DISK_QUOTA, FailureKind.QUOTA,
            lambda: [check_disk_quota(ctx)],
        )):
            return

        # Snapshot the lock file before anything can build
        snapshot: Optional[LockSnapshot] = None

        def take_snapshot() -> list[StageResult]:
            nonlocal snapshot
            snapshot = snapshot_lock_file(ctx)
            return []

        # backup write errors fail the workspace, they are not drift
        if not record_all(self._guard(ctx, STAGE_LOCK_SNAPSHOT, FailureKind.PROVISIONING, take_snapshot)):
            return

        # 4. Quality gates: license -> lint -> format
        if not record_all(self._guard(
            ctx, STAGE_QUALITY_GATE, FailureKind.QUALITY_GATE,
            lambda: run_quality_gates(ctx),
        )):
            return

        # 5. Tests: unit -> integration
        if not record_all(self._guard(
            ctx, STAGE_TEST, FailureKind.TEST,
            lambda: run_tests(ctx),
        )):
            return

        # 6. Lock drift
        if not record_all(self._guard(
            ctx, STAGE_LOCK_DRIFT, FailureKind.LOCK_DRIFT,
            lambda: [check_lock_drift(ctx, snapshot)],
        )):
            return

        # 7. Save cache (success only)
        run.record(self._save_cache(ctx, cache_entry))
