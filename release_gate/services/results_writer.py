"""
Results Writer
==============
Serializes a finished PipelineRun into ``<results_dir>/<run_id>.json``.
"""
import json
import logging
import os

from release_gate.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)

class ResultsWriter:
    """
    Service responsible for persisting the full record of a pipeline run
    (stages, failure classification, container lifecycle) as JSON.
    """

    @staticmethod
    def build_payload(run: PipelineRun) -> dict:
        data = run.model_dump(mode="json")
        data["summary"] = run.summary()
        data["stage_order"] = run.stage_names()
        return data

    @staticmethod
    def write_results(run: PipelineRun, results_dir: str = "results") -> bool:
        """
        Write ``run`` to ``results_dir``.

        Returns False instead of raising: a results file that cannot be
        written must not change the run's outcome.
        """
        try:
            os.makedirs(results_dir, exist_ok=True)
            abs_output = os.path.abspath(os.path.join(results_dir, f"{run.run_id}.json"))
            logger.info("Writing run results to %s", abs_output)

            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(ResultsWriter.build_payload(run), f, indent=2)

            return True

        except OSError as e:
            logger.error("Failed to write results for run %s: %s", run.run_id, e, exc_info=True)
            return False
