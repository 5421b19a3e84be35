"""
release-gate CLI
================
    release-gate run-ci     [--workspace DIR] [--config FILE] [--trigger push|pull_request|manual]
    release-gate run-smoke  [--workspace DIR] [--config FILE] [--trigger ...]
    release-gate should-run [PATH ...] [--base REF] [--trigger ...] [--branch NAME]
    release-gate serve      [--host H] [--port P]

Exit codes:
    0    every stage passed
    1    a stage failed (the failing stage is named on stderr)
    2    configuration error
    124  the run hit its wall-clock timeout
"""
import logging
from typing import List, Optional

import typer
import uvicorn

from release_gate.core import config
from release_gate.core.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_STAGE_FAILED,
    EXIT_TIMED_OUT,
)
from release_gate.core.errors import ConfigError
from release_gate.core.settings import load_settings
from release_gate.models.pipeline_run import PipelineRun, RunStatus, TriggerReason
from release_gate.pipeline.runner import PIPELINE_CI, PIPELINE_SMOKE, run_pipeline
from release_gate.pipeline.triggers import changed_paths_from_git, should_run_ci, should_run_smoke
from release_gate.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="release-gate",
    help="Build verification and container smoke-test orchestrator.",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    log_dir: str = typer.Option(config.LOG_DIR, "--log-dir", help="Directory for log files."),
) -> None:
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, log_dir=log_dir)


def exit_code_for(run: PipelineRun) -> int:
    if run.status == RunStatus.SUCCEEDED:
        return EXIT_OK
    if run.timed_out:
        return EXIT_TIMED_OUT
    return EXIT_STAGE_FAILED


def _report(run: PipelineRun) -> None:
    for stage in run.stages:
        if stage.failure:
            mark = "FAIL"
        elif stage.skipped:
            mark = "SKIP"
        else:
            mark = "PASS"
        typer.echo(f"  [{mark}] {stage.name} ({stage.duration_seconds:.1f}s)")
    if run.status == RunStatus.SUCCEEDED:
        typer.echo(run.summary())
    else:
        typer.echo(run.summary(), err=True)
        failed = next((s for s in run.stages if s.failure), None)
        if failed is not None and failed.output_path:
            typer.echo(f"  output: {failed.output_path}", err=True)


def _run(pipeline: str, workspace: str, config_path: Optional[str], trigger: TriggerReason) -> None:
    try:
        settings = load_settings(workspace, config_path)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    run = run_pipeline(pipeline, settings, trigger=trigger)
    _report(run)
    raise typer.Exit(code=exit_code_for(run))


@app.command("run-ci")
def run_ci(
    workspace: str = typer.Option(".", "--workspace", "-w", help="Source checkout."),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline YAML file."),
    trigger: TriggerReason = typer.Option(TriggerReason.MANUAL, "--trigger", help="Why the run started."),
) -> None:
    """Provision, gate, test and drift-check a checkout."""
    _run(PIPELINE_CI, workspace, config_path, trigger)


@app.command("run-smoke")
def run_smoke(
    workspace: str = typer.Option(".", "--workspace", "-w", help="Source checkout."),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline YAML file."),
    trigger: TriggerReason = typer.Option(TriggerReason.MANUAL, "--trigger", help="Why the run started."),
) -> None:
    """Build the server image and smoke it with and without a mounted config."""
    _run(PIPELINE_SMOKE, workspace, config_path, trigger)


@app.command("should-run")
def should_run(
    paths: Optional[List[str]] = typer.Argument(None, help="Changed paths (default: git diff against --base)."),
    workspace: str = typer.Option(".", "--workspace", "-w", help="Source checkout."),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline YAML file."),
    base: Optional[str] = typer.Option(None, "--base", help="Base ref for git diff."),
    trigger: TriggerReason = typer.Option(TriggerReason.PUSH, "--trigger"),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch the change targets."),
) -> None:
    """Print which pipelines a change set triggers."""
    try:
        settings = load_settings(workspace, config_path)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    changed = list(paths or [])
    if not changed and base:
        try:
            changed = changed_paths_from_git(settings.workspace, base)
        except RuntimeError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=EXIT_CONFIG_ERROR)

    ci = should_run_ci(changed, trigger, settings.triggers, branch=branch)
    smoke = should_run_smoke(changed, trigger, settings.triggers, branch=branch)
    typer.echo(f"ci: {'yes' if ci else 'no'}")
    typer.echo(f"smoke: {'yes' if smoke else 'no'}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Serve the runs API."""
    uvicorn.run("main:app", host=host, port=port)


if __name__ == "__main__":
    app()
