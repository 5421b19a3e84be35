"""
Runs API
========
POST /runs/ci       start the verification pipeline for a checkout
POST /runs/smoke    start the container build + smoke pipeline
GET  /runs          list known runs
GET  /runs/{run_id} status, stage list and first failing stage of a run

Runs execute in a background task; the POST returns 202 with the run id as
soon as the run is registered, and callers poll GET /runs/{run_id}.
"""
import os
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel, field_validator

from release_gate.core.errors import ConfigError
from release_gate.core.settings import PipelineSettings, load_settings
from release_gate.models.pipeline_run import PipelineRun, TriggerReason
from release_gate.pipeline.runner import PIPELINE_CI, PIPELINE_SMOKE, run_pipeline
from release_gate.services.run_registry import registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class RunRequest(BaseModel):
    workspace: str
    trigger: TriggerReason = TriggerReason.MANUAL
    config_path: Optional[str] = None

    @field_validator("workspace")
    @classmethod
    def validate_workspace(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("workspace must not be empty")
        return v


class RunAccepted(BaseModel):
    run_id: str
    pipeline: str
    status: str


class StageSummary(BaseModel):
    name: str
    exit_code: int
    passed: bool
    skipped: bool
    duration_seconds: float
    failure: Optional[str] = None
    output_path: Optional[str] = None


class RunStatusResponse(BaseModel):
    run_id: str
    pipeline: str
    trigger: str
    status: str
    failed_stage: Optional[str] = None
    failure: Optional[str] = None
    timed_out: bool = False
    summary: str
    stages: List[StageSummary] = []


def _to_response(run: PipelineRun) -> RunStatusResponse:
    return RunStatusResponse(
        run_id=run.run_id,
        pipeline=run.pipeline,
        trigger=run.trigger.value,
        status=run.status.value,
        failed_stage=run.failed_stage,
        failure=run.failure.describe() if run.failure else None,
        timed_out=run.timed_out,
        summary=run.summary(),
        stages=[
            StageSummary(
                name=s.name,
                exit_code=s.exit_code,
                passed=s.succeeded,
                skipped=s.skipped,
                duration_seconds=s.duration_seconds,
                failure=s.failure.describe() if s.failure else None,
                output_path=s.output_path,
            )
            for s in run.stages
        ],
    )


def _execute(pipeline: str, settings: PipelineSettings, run: PipelineRun) -> None:
    try:
        run_pipeline(pipeline, settings, trigger=run.trigger, run=run)
    except Exception:
        # runs after the 202 was sent; the run record is the only report
        logger.exception("Run %s crashed", run.run_id)


def _start(pipeline: str, request: RunRequest, background_tasks: BackgroundTasks) -> RunAccepted:
    if not os.path.isdir(request.workspace):
        raise HTTPException(status_code=400, detail=f"workspace {request.workspace} is not a directory")
    try:
        settings = load_settings(request.workspace, request.config_path)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    run = registry.register(PipelineRun(
        pipeline=pipeline, trigger=request.trigger, workspace=settings.workspace,
    ))
    background_tasks.add_task(_execute, pipeline, settings, run)
    logger.info("Accepted %s run %s for %s", pipeline, run.run_id, settings.workspace)
    return RunAccepted(run_id=run.run_id, pipeline=pipeline, status=run.status.value)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.post("/ci", response_model=RunAccepted, status_code=202)
async def start_ci(request: RunRequest, background_tasks: BackgroundTasks):
    return _start(PIPELINE_CI, request, background_tasks)


@router.post("/smoke", response_model=RunAccepted, status_code=202)
async def start_smoke(request: RunRequest, background_tasks: BackgroundTasks):
    return _start(PIPELINE_SMOKE, request, background_tasks)


@router.get("", response_model=List[RunStatusResponse])
async def list_runs():
    return [_to_response(r) for r in registry.runs()]


@router.get("/{run_id}", response_model=RunStatusResponse)
async def get_run(run_id: str):
    run = registry.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return _to_response(run)
