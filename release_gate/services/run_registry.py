"""
Run Registry
============
In-memory index of pipeline runs started through the API.

Runs are registered in the pending state before they execute so callers can
poll them by id; the pipeline mutates the registered object in place. Scoped
to one process, no persistence. Finished runs are also written to the
results directory by ResultsWriter.
"""
import threading
import logging
from typing import Optional

from release_gate.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)

_MAX_RUNS = 200


class RunRegistry:

    def __init__(self, max_runs: int = _MAX_RUNS) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()
        self._max_runs = max_runs

    def register(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            if len(self._runs) >= self._max_runs:
                # evict the oldest finished run
                for run_id, existing in self._runs.items():
                    if existing.is_terminal:
                        del self._runs[run_id]
                        break
            self._runs[run.run_id] = run
        logger.debug("Registered run %s (%s)", run.run_id, run.pipeline)
        return run

    def get(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()


registry = RunRegistry()
