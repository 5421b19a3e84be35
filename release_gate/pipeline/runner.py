"""
Pipeline Runner
===============
Single entry point shared by the CLI and the API: dispatches to the CI or
smoke pipeline and persists the finished run.
"""
import os
import logging
from typing import Optional

from release_gate.container.smoke_controller import SmokeController
from release_gate.core.settings import PipelineSettings
from release_gate.models.pipeline_run import PipelineRun, TriggerReason
from release_gate.pipeline.ci_pipeline import CIPipeline
from release_gate.services.results_writer import ResultsWriter

logger = logging.getLogger(__name__)

PIPELINE_CI = "ci"
PIPELINE_SMOKE = "smoke"
PIPELINES = (PIPELINE_CI, PIPELINE_SMOKE)


def run_pipeline(
    pipeline: str,
    settings: PipelineSettings,
    trigger: TriggerReason = TriggerReason.MANUAL,
    run: Optional[PipelineRun] = None,
) -> PipelineRun:
    """Execute ``pipeline`` ("ci" or "smoke") and write its results file."""
    if pipeline == PIPELINE_CI:
        result = CIPipeline(settings).run(trigger=trigger, run=run)
    elif pipeline == PIPELINE_SMOKE:
        result = SmokeController(settings).run(trigger=trigger, run=run)
    else:
        raise ValueError(f"unknown pipeline {pipeline!r}, expected one of {PIPELINES}")

    ResultsWriter.write_results(result, results_dir=_results_dir(settings))
    return result


def _results_dir(settings: PipelineSettings) -> str:
    path = os.path.expanduser(settings.results_dir)
    return path if os.path.isabs(path) else os.path.join(settings.workspace, path)
