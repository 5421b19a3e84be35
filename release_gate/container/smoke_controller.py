"""
Smoke Controller
================
Builds the server image and proves it boots and answers, twice:

    1. default   — image's built-in configuration
    2. with-config — an external config file bind-mounted read-only at a fixed
                     in-container path

Per smoke run:

    Idle -> Built -> Started -> AwaitingReady -> Probed -> Torn Down

BOUNDARY RULES:
    - The image is built once and reused by both runs; a build failure is
      fatal with no retry (same source -> same build error). The build is
      bounded by the run's remaining time budget like every other stage.
    - Start is idempotent under name collision: any container already holding
      the name is force-removed first, and a daemon-reported name conflict is
      retried exactly once after another forced removal.
    - The probe is an opaque external script; only its exit code matters.
    - Teardown ALWAYS runs, even after a failed start / readiness / probe.
      Teardown errors are logged and recorded but never replace the original
      failure.
    - Fail-fast: if run 1 fails, run 2 does not start.
"""
import concurrent.futures
import logging
import os
from typing import Optional

from docker.errors import APIError, BuildError, DockerException
from docker.models.containers import Container

from release_gate.container import readiness
from release_gate.container.docker_engine import DockerEngine, is_name_conflict
from release_gate.core.constants import (
    SMOKE_DEFAULT,
    SMOKE_WITH_CONFIG,
    STAGE_CONTAINER_START,
    STAGE_IMAGE_BUILD,
    STAGE_PROBE,
    STAGE_READINESS,
    STAGE_TEARDOWN,
)
from release_gate.core.settings import PipelineSettings
from release_gate.executor.process_runner import run_command, write_log
from release_gate.models.container_instance import ContainerInstance, ContainerState
from release_gate.models.pipeline_run import PipelineRun, TriggerReason
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import Deadline, SmokeContext
from release_gate.stages.stage_helpers import build_result, classify, timeout_failure, utcnow

logger = logging.getLogger(__name__)


def smoke_stage_name(stage: str, label: str) -> str:
    return f"{stage}:{label}"


class SmokeController:
    """
    Container build + smoke probe pipeline.

    Usage:
        controller = SmokeController(load_settings("/src/checkout"))
        run = controller.run()
    """

    def __init__(
        self,
        settings: PipelineSettings,
        engine: Optional[DockerEngine] = None,
        sleep=None,
    ) -> None:
        self.settings = settings
        self.engine = engine or DockerEngine()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------
    def _build_within_deadline(self, ctx: SmokeContext, log_path: str) -> str:
        """Run the blocking SDK build on a worker, joined with the remaining budget."""
        remaining = ctx.deadline.remaining()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="image-build")
        future = pool.submit(
            self.engine.build_image,
            context=ctx.resolve_path(ctx.smoke.build_context),
            dockerfile=ctx.smoke.dockerfile,
            tag=ctx.smoke.image_name,
            log_path=log_path,
            timeout_seconds=remaining,
        )
        try:
            return future.result(timeout=remaining)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def build(self, ctx: SmokeContext) -> StageResult:
        """Idle -> Built."""
        started = utcnow()
        log_path = ctx.log_path(STAGE_IMAGE_BUILD)
        if ctx.deadline.expired():
            return build_result(ctx, STAGE_IMAGE_BUILD, started, failure=timeout_failure(STAGE_IMAGE_BUILD))
        try:
            image_id = self._build_within_deadline(ctx, log_path)
        except concurrent.futures.TimeoutError:
            logger.error("Image build still running at the deadline, dropping the daemon connection")
            # closing the client ends the build stream; the daemon cancels the build
            self.engine.close()
            write_log(log_path, ">>> TIMED OUT\n", "")
            return build_result(ctx, STAGE_IMAGE_BUILD, started, failure=timeout_failure(STAGE_IMAGE_BUILD))
        except BuildError as e:
            build_log = "".join(
                chunk.get("stream", "") or chunk.get("error", "")
                for chunk in (e.build_log or []) if isinstance(chunk, dict)
            )
            write_log(log_path, ">>> BUILD FAILED\n", build_log)
            return build_result(
                ctx, STAGE_IMAGE_BUILD, started,
                failure=StageFailure(kind=FailureKind.IMAGE_BUILD, message=str(e.msg)),
                log_excerpt=build_log or str(e.msg),
            )
        except DockerException as e:
            logger.error("Image build failed: %s", e)
            return build_result(
                ctx, STAGE_IMAGE_BUILD, started,
                failure=StageFailure(kind=FailureKind.IMAGE_BUILD, message=f"{type(e).__name__}: {e}"),
            )
        return build_result(ctx, STAGE_IMAGE_BUILD, started, log_excerpt=f"built {ctx.smoke.image_name} ({image_id})")

    def start(self, ctx: SmokeContext, instance: ContainerInstance) -> tuple[StageResult, Optional[Container]]:
        """Built -> Started, force-removing any previous holder of the name."""
        name = smoke_stage_name(STAGE_CONTAINER_START, instance.label)
        started = utcnow()
        failure = StageFailure(kind=FailureKind.CONTAINER_START)

        if instance.config_path and not os.path.isfile(instance.config_path):
            return build_result(
                ctx, name, started,
                failure=failure.model_copy(update={"message": f"config file {instance.config_path} not found"}),
            ), None

        try:
            if self.engine.force_remove(instance.name):
                logger.info("Removed stale container holding name %s", instance.name)
        except DockerException as e:
            # the conflict retry below covers a removal that did not stick
            logger.warning("Stale container cleanup for %s failed: %s", instance.name, e)

        container = None
        for attempt in (1, 2):
            try:
                container = self._run(ctx, instance)
                break
            except APIError as e:
                if attempt == 1 and is_name_conflict(e):
                    logger.warning("Name %s still in use, force-removing and retrying once", instance.name)
                    try:
                        self.engine.force_remove(instance.name)
                    except DockerException as cleanup_error:
                        logger.warning("Forced cleanup failed: %s", cleanup_error)
                    continue
                return build_result(
                    ctx, name, started,
                    failure=failure.model_copy(update={"message": f"{type(e).__name__}: {e}"}),
                ), None
            except DockerException as e:
                return build_result(
                    ctx, name, started,
                    failure=failure.model_copy(update={"message": f"{type(e).__name__}: {e}"}),
                ), None

        instance.container_id = container.short_id
        instance.state = ContainerState.RUNNING
        return build_result(
            ctx, name, started,
            log_excerpt=f"started {instance.name} ({container.short_id}) on {instance.port_mapping}",
        ), container

    def _run(self, ctx: SmokeContext, instance: ContainerInstance) -> Container:
        return self.engine.run_container(
            image=instance.image,
            name=instance.name,
            host_address=instance.host_address,
            port=instance.port,
            config_path=instance.config_path,
            config_mount_path=ctx.smoke.config_mount_path,
        )

    def await_ready(self, ctx: SmokeContext, instance: ContainerInstance, container: Container) -> StageResult:
        """Started -> AwaitingReady -> ready (or not)."""
        name = smoke_stage_name(STAGE_READINESS, instance.label)
        started = utcnow()
        sleep_kwargs = {"sleep": self._sleep} if self._sleep else {}

        if ctx.smoke.readiness_strategy == "poll":
            url = f"http://{instance.host_address}:{instance.port}{ctx.smoke.health_path}"
            ready, detail = readiness.wait_until_ready(
                url,
                timeout_seconds=min(ctx.smoke.readiness_timeout_seconds, ctx.deadline.remaining()),
                alive=lambda: self.engine.is_running(container),
                **sleep_kwargs,
            )
        else:
            readiness.settle(min(ctx.smoke.settle_delay_seconds, ctx.deadline.remaining()), **sleep_kwargs)
            ready = self.engine.is_running(container)
            detail = "settled" if ready else "container exited during settle delay"

        if ready:
            return build_result(ctx, name, started, log_excerpt=detail)

        logs = self.engine.container_logs(container)
        write_log(ctx.log_path(name), f">>> not ready: {detail}\n>>> container logs:\n", logs)
        return build_result(
            ctx, name, started,
            failure=StageFailure(kind=FailureKind.CONTAINER_START, message=detail),
            log_excerpt=logs or detail,
        )

    def probe(self, ctx: SmokeContext, instance: ContainerInstance) -> StageResult:
        """AwaitingReady -> Probed."""
        name = smoke_stage_name(STAGE_PROBE, instance.label)
        started = utcnow()
        execution = run_command(
            ctx.smoke.probe_command,
            cwd=ctx.workspace,
            timeout_seconds=ctx.deadline.remaining(),
            env=ctx.probe_env(),
            log_path=ctx.log_path(name),
        )
        outcome = classify(execution, StageFailure(kind=FailureKind.PROBE), name)
        if outcome is None:
            instance.state = ContainerState.PROBED
            instance.probe_passed = True
        return build_result(ctx, name, started, execution=execution, failure=outcome)

    def teardown(self, ctx: SmokeContext, instance: ContainerInstance) -> StageResult:
        """-> Torn Down. Never produces a failure."""
        name = smoke_stage_name(STAGE_TEARDOWN, instance.label)
        started = utcnow()
        try:
            self.engine.force_remove(instance.name)
        except DockerException as e:
            logger.warning("Teardown of %s failed: %s", instance.name, e)
            write_log(ctx.log_path(name), ">>> teardown failed\n", str(e))
            return StageResult(
                name=name, started_at=started, finished_at=utcnow(),
                exit_code=1, log_excerpt=f"teardown failed: {e}",
            )
        instance.state = ContainerState.REMOVED
        return build_result(ctx, name, started, log_excerpt=f"removed {instance.name}")

    # ------------------------------------------------------------------
    # One smoke run
    # ------------------------------------------------------------------
    def smoke_once(self, ctx: SmokeContext, run: PipelineRun, instance: ContainerInstance) -> bool:
        """start -> wait -> probe, with teardown always. Returns True if probed."""
        run.containers.append(instance)
        logger.info("[SMOKE] Run '%s' starting (config=%s)", instance.label, instance.config_path or "default")
        try:
            if ctx.deadline.expired():
                run.record(build_result(ctx, smoke_stage_name(STAGE_CONTAINER_START, instance.label),
                                        utcnow(), failure=timeout_failure(STAGE_CONTAINER_START)))
                return False

            start_result, container = self.start(ctx, instance)
            if not run.record(start_result):
                return False

            if not run.record(self.await_ready(ctx, instance, container)):
                return False

            if ctx.deadline.expired():
                run.record(build_result(ctx, smoke_stage_name(STAGE_PROBE, instance.label),
                                        utcnow(), failure=timeout_failure(STAGE_PROBE)))
                return False

            return run.record(self.probe(ctx, instance))
        except Exception as e:
            logger.exception("Unexpected error during smoke run '%s'", instance.label)
            run.record(build_result(
                ctx, smoke_stage_name(STAGE_CONTAINER_START, instance.label), utcnow(),
                failure=StageFailure(kind=FailureKind.CONTAINER_START, message=f"{type(e).__name__}: {e}"),
            ))
            return False
        finally:
            run.record(self.teardown(ctx, instance))

    def _instance(self, ctx: SmokeContext, label: str, config_path: Optional[str]) -> ContainerInstance:
        return ContainerInstance(
            name=ctx.smoke.server_name,
            image=ctx.smoke.image_name,
            host_address=ctx.smoke.server_addr,
            port=ctx.smoke.server_port,
            config_path=config_path,
            label=label,
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
        Build the image, then smoke it with default config and with the
        external config mounted.

        Returns
        -------
        PipelineRun
            Always returned in a terminal state.
        """
        run = run or PipelineRun(pipeline="smoke", trigger=trigger)
        run.pipeline = "smoke"
        run.trigger = trigger
        run.workspace = self.settings.workspace
        ctx = SmokeContext(
            run_id=run.run_id,
            settings=self.settings,
            deadline=Deadline(self.settings.smoke.timeout_minutes * 60),
        )
        run.start()
        logger.info("[SMOKE] Run %s started (image=%s, name=%s, port=%s:%d)",
                    run.run_id, ctx.smoke.image_name, ctx.smoke.server_name,
                    ctx.smoke.server_addr, ctx.smoke.server_port)

        try:
            if not run.record(self.build(ctx)):
                return run

            lanes = [
                (SMOKE_DEFAULT, None),
                (SMOKE_WITH_CONFIG, ctx.resolve_path(ctx.smoke.config_file)),
            ]
            for label, config_path in lanes:
                if not self.smoke_once(ctx, run, self._instance(ctx, label, config_path)):
                    break
        finally:
            run.finish()
            logger.info("[SMOKE] %s", run.summary())

        return run
