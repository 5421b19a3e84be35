"""
Release Gate API server.

    uvicorn main:app          (or: release-gate serve)

Routes:
    GET  /health
    POST /runs/ci, POST /runs/smoke
    GET  /runs, GET /runs/{run_id}
"""
import logging
import time

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from release_gate.api.runs import router as runs_router
from release_gate.core import config
from release_gate.models.pipeline_run import RunStatus
from release_gate.services.run_registry import registry
from release_gate.utils.logging_config import setup_logging

setup_logging(level=logging.INFO, log_dir=config.LOG_DIR)
logger = logging.getLogger("main")

app = FastAPI(title="Release Gate: Build Verification & Smoke Test Orchestrator")


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------
class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s raised", request.method, request.url.path)
            raise
        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response


app.add_middleware(RequestLogMiddleware)


@app.get("/health")
async def health_check():
    active = sum(1 for r in registry.runs() if r.status == RunStatus.RUNNING)
    return {"status": "ok", "active_runs": active}


app.include_router(runs_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
