"""
Runs API Tests
==============
FastAPI TestClient against the app with the pipeline runner patched.
Background tasks run synchronously inside TestClient, so a run is terminal
by the time the POST returns.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from main import app
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.services.run_registry import registry
from release_gate.stages.stage_helpers import utcnow


@pytest.fixture(autouse=True)
def clean_registry():
    registry.clear()
    yield
    registry.clear()


@pytest.fixture
def client():
    return TestClient(app)


def fake_pipeline(failing_stage=None):
    def _run(pipeline, settings, trigger, run):
        run.start()
        now = utcnow()
        run.record(StageResult(name="provision", started_at=now, finished_at=now))
        if failing_stage:
            run.record(StageResult(
                name=failing_stage, started_at=now, finished_at=now, exit_code=1,
                failure=StageFailure(kind=FailureKind.QUALITY_GATE, check="lint"),
            ))
        run.finish()
        return run
    return _run


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["active_runs"] == 0


def test_start_ci_run_and_poll(client, tmp_path):
    with patch("release_gate.api.runs.run_pipeline", side_effect=fake_pipeline()) as runner:
        resp = client.post("/runs/ci", json={"workspace": str(tmp_path), "trigger": "push"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["pipeline"] == "ci"
    runner.assert_called_once()
    assert runner.call_args.args[0] == "ci"

    status = client.get(f"/runs/{body['run_id']}").json()
    assert status["status"] == "succeeded"
    assert status["trigger"] == "push"
    assert [s["name"] for s in status["stages"]] == ["provision"]


def test_failed_run_reports_first_failing_stage(client, tmp_path):
    with patch("release_gate.api.runs.run_pipeline", side_effect=fake_pipeline("quality-gate:lint")):
        run_id = client.post("/runs/ci", json={"workspace": str(tmp_path)}).json()["run_id"]

    status = client.get(f"/runs/{run_id}").json()
    assert status["status"] == "failed"
    assert status["failed_stage"] == "quality-gate:lint"
    assert status["failure"] == "quality_gate{lint}"
    assert status["stages"][-1]["passed"] is False


def test_start_smoke_run(client, tmp_path):
    with patch("release_gate.api.runs.run_pipeline", side_effect=fake_pipeline()) as runner:
        resp = client.post("/runs/smoke", json={"workspace": str(tmp_path)})
    assert resp.status_code == 202
    assert resp.json()["pipeline"] == "smoke"
    assert runner.call_args.args[0] == "smoke"


def test_list_runs(client, tmp_path):
    with patch("release_gate.api.runs.run_pipeline", side_effect=fake_pipeline()):
        client.post("/runs/ci", json={"workspace": str(tmp_path)})
        client.post("/runs/smoke", json={"workspace": str(tmp_path)})
    runs = client.get("/runs").json()
    assert sorted(r["pipeline"] for r in runs) == ["ci", "smoke"]


def test_crashing_pipeline_does_not_break_api(client, tmp_path):
    with patch("release_gate.api.runs.run_pipeline", side_effect=RuntimeError("docker gone")):
        resp = client.post("/runs/smoke", json={"workspace": str(tmp_path)})
    assert resp.status_code == 202


def test_unknown_run_is_404(client):
    assert client.get("/runs/doesnotexist").status_code == 404


def test_missing_workspace_is_400(client, tmp_path):
    resp = client.post("/runs/ci", json={"workspace": str(tmp_path / "nope")})
    assert resp.status_code == 400


def test_bad_config_is_400(client, tmp_path):
    (tmp_path / "release-gate.yml").write_text("ci:\n  bogus: 1\n")
    resp = client.post("/runs/ci", json={"workspace": str(tmp_path)})
    assert resp.status_code == 400
    assert "Invalid pipeline config" in resp.json()["detail"]


def test_blank_workspace_is_422(client):
    assert client.post("/runs/ci", json={"workspace": "   "}).status_code == 422
