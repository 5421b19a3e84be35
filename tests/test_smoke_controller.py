"""
Smoke Controller Tests
======================
Container lifecycle with the docker engine mocked: no daemon required.
The probe is a real (trivial) shell command.
"""
import importlib
import threading
from unittest.mock import MagicMock, call, patch

import pytest
from docker.errors import APIError, BuildError

from release_gate.container.docker_engine import DockerEngine
from release_gate.container.smoke_controller import SmokeController
from release_gate.core import config
from release_gate.core.settings import PipelineSettings, SmokeSettings
from release_gate.models.container_instance import ContainerState
from release_gate.models.pipeline_run import RunStatus
from release_gate.models.stage_result import FailureKind
from release_gate.pipeline.context import Deadline, SmokeContext

FULL_ORDER = [
    "image-build",
    "container-start:default",
    "readiness:default",
    "probe:default",
    "teardown:default",
    "container-start:with-config",
    "readiness:with-config",
    "probe:with-config",
    "teardown:with-config",
]


@pytest.fixture
def checkout(tmp_path):
    ws = tmp_path / "ceresdb"
    (ws / "docs").mkdir(parents=True)
    (ws / "docs" / "minimal.toml").write_text('[server]\nbind_addr = "0.0.0.0"\nhttp_port = 5440\n')
    (ws / "Dockerfile").write_text("FROM rust:slim\n")
    return ws


@pytest.fixture
def container():
    c = MagicMock()
    c.short_id = "c0ffee12"
    return c


@pytest.fixture
def engine(container):
    e = MagicMock(spec=DockerEngine)
    e.build_image.return_value = "sha256:1f2e3d"
    e.force_remove.return_value = False
    e.run_container.return_value = container
    e.is_running.return_value = True
    e.container_logs.return_value = "server exited: bad config"
    return e


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def make_settings(checkout, **smoke):
    defaults = dict(probe_command="true", readiness_strategy="settle", settle_delay_seconds=10)
    defaults.update(smoke)
    return PipelineSettings(workspace=str(checkout), log_dir="logs", smoke=SmokeSettings(**defaults))


def api_error(message, status):
    response = MagicMock(status_code=status, reason="Conflict", url="http+docker://localhost/containers/create")
    return APIError(message, response=response)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------
def test_both_runs_probe_and_tear_down(checkout, engine):
    sleep = SleepRecorder()
    run = SmokeController(make_settings(checkout), engine=engine, sleep=sleep).run()

    assert run.status == RunStatus.SUCCEEDED
    assert run.stage_names() == FULL_ORDER
    assert [c.label for c in run.containers] == ["default", "with-config"]
    for instance in run.containers:
        assert instance.state == ContainerState.REMOVED
        assert instance.probe_passed
        assert instance.container_id == "c0ffee12"
    assert sleep.calls == [10, 10]


def test_image_built_once_and_reused(checkout, engine):
    SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    engine.build_image.assert_called_once()
    kwargs = engine.build_image.call_args.kwargs
    assert kwargs["tag"] == "ceresdb-server:latest"
    assert kwargs["dockerfile"] == "Dockerfile"
    images = {c.kwargs["image"] for c in engine.run_container.call_args_list}
    assert images == {"ceresdb-server:latest"}


def test_second_run_mounts_config_read_only_path(checkout, engine):
    SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    first, second = engine.run_container.call_args_list
    assert first.kwargs["config_path"] is None
    assert second.kwargs["config_path"] == str(checkout / "docs" / "minimal.toml")
    assert second.kwargs["config_mount_path"] == "/etc/ceresdb/ceresdb.toml"
    for c in (first, second):
        assert c.kwargs["name"] == "standalone-server"
        assert c.kwargs["host_address"] == "127.0.0.1"
        assert c.kwargs["port"] == 5440


def test_probe_sees_server_environment(checkout, engine):
    probe = (
        'test "$CERESDB_ADDR:$CERESDB_PORT" = "127.0.0.1:5440"'
        ' && test "$IMAGE_NAME" = ceresdb-server:latest'
        ' && test "$SERVER_NAME" = standalone-server'
    )
    run = SmokeController(make_settings(checkout, probe_command=probe), engine=engine,
                          sleep=SleepRecorder()).run()
    assert run.status == RunStatus.SUCCEEDED


def test_probe_env_names_and_extras(checkout):
    settings = make_settings(checkout, server_port=8831, probe_env={"RUST_LOG": "info"})
    ctx = SmokeContext(run_id="r1", settings=settings, deadline=Deadline(60))

    env = ctx.probe_env()

    assert env["CERESDB_ADDR"] == "127.0.0.1"
    assert env["CERESDB_PORT"] == "8831"
    assert env["SERVER_PORT"] == "8831"
    assert env["RUST_LOG"] == "info"


def test_server_address_read_from_ceresdb_env(monkeypatch):
    monkeypatch.setenv("CERESDB_ADDR", "0.0.0.0")
    monkeypatch.setenv("CERESDB_PORT", "8831")
    importlib.reload(config)
    try:
        assert config.SERVER_ADDR == "0.0.0.0"
        assert config.SERVER_PORT == 8831
    finally:
        monkeypatch.delenv("CERESDB_ADDR")
        monkeypatch.delenv("CERESDB_PORT")
        importlib.reload(config)


def test_stale_container_removed_before_start(checkout, engine):
    engine.force_remove.return_value = True
    SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()
    # stale cleanup + teardown, per run
    assert engine.force_remove.call_args_list == [call("standalone-server")] * 4


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------
def test_probe_failure_still_tears_down_and_skips_second_run(checkout, engine):
    run = SmokeController(make_settings(checkout, probe_command="exit 1"), engine=engine,
                          sleep=SleepRecorder()).run()

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == "probe:default"
    assert run.failure.kind == FailureKind.PROBE
    assert run.stage_names()[-1] == "teardown:default"
    assert not any(n.endswith(":with-config") for n in run.stage_names())
    assert run.containers[0].state == ContainerState.REMOVED
    assert not run.containers[0].probe_passed


def test_build_failure_is_fatal(checkout, engine):
    engine.build_image.side_effect = BuildError(
        "The command '/bin/sh -c cargo build' returned a non-zero code: 101",
        [{"stream": "Step 4/9 : RUN cargo build\n"}, {"error": "linker `cc` not found"}],
    )

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.stage_names() == ["image-build"]
    assert run.failure.kind == FailureKind.IMAGE_BUILD
    assert "linker" in run.stages[0].log_excerpt
    engine.run_container.assert_not_called()


def test_name_conflict_retried_once(checkout, engine, container):
    engine.run_container.side_effect = [
        api_error('Conflict. The container name "/standalone-server" is already in use', 409),
        container,
        container,
    ]

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.status == RunStatus.SUCCEEDED
    assert engine.run_container.call_count == 3


def test_repeated_name_conflict_fails_start(checkout, engine):
    conflict = api_error("name already in use", 409)
    engine.run_container.side_effect = [conflict, conflict]

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.failed_stage == "container-start:default"
    assert run.failure.kind == FailureKind.CONTAINER_START
    assert engine.run_container.call_count == 2
    assert run.stage_names()[-1] == "teardown:default"


def test_start_error_is_container_start_failure(checkout, engine):
    engine.run_container.side_effect = api_error("port is already allocated", 500)

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.failed_stage == "container-start:default"
    assert engine.run_container.call_count == 1
    assert run.stage_names() == ["image-build", "container-start:default", "teardown:default"]


def test_container_exits_during_settle(checkout, engine):
    engine.is_running.return_value = False

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.failed_stage == "readiness:default"
    assert run.failure.kind == FailureKind.CONTAINER_START
    assert "bad config" in run.stages[2].log_excerpt
    assert "probe:default" not in run.stage_names()
    assert run.stage_names()[-1] == "teardown:default"


def test_missing_config_file_fails_second_run(checkout, engine):
    (checkout / "docs" / "minimal.toml").unlink()

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.failed_stage == "container-start:with-config"
    assert "not found" in run.failure.message
    assert engine.run_container.call_count == 1
    assert run.stage_names()[-1] == "teardown:with-config"


def test_teardown_error_does_not_fail_run(checkout, engine):
    engine.force_remove.side_effect = [False, APIError("daemon went away"), False, False]

    run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.status == RunStatus.SUCCEEDED
    teardown = run.stages[4]
    assert teardown.name == "teardown:default"
    assert teardown.exit_code == 1
    assert teardown.failure is None


def test_teardown_error_does_not_mask_probe_failure(checkout, engine):
    engine.force_remove.side_effect = [False, APIError("daemon went away")]

    run = SmokeController(make_settings(checkout, probe_command="exit 3"), engine=engine,
                          sleep=SleepRecorder()).run()

    assert run.failed_stage == "probe:default"
    assert run.failure.kind == FailureKind.PROBE


# ---------------------------------------------------------------------------
# Readiness strategy
# ---------------------------------------------------------------------------
def test_poll_strategy_hits_published_port(checkout, engine):
    ok = MagicMock(status_code=200)
    with patch("release_gate.container.readiness.httpx.get", return_value=ok) as get:
        run = SmokeController(
            make_settings(checkout, readiness_strategy="poll", health_path="/metrics"),
            engine=engine, sleep=SleepRecorder(),
        ).run()

    assert run.status == RunStatus.SUCCEEDED
    assert get.call_args_list[0].args[0] == "http://127.0.0.1:5440/metrics"


# ---------------------------------------------------------------------------
# Time budget
# ---------------------------------------------------------------------------
def test_build_overrunning_budget_times_out(checkout, engine):
    release = threading.Event()
    engine.build_image.side_effect = lambda **kwargs: release.wait(10) and "sha256:late"

    try:
        run = SmokeController(make_settings(checkout, timeout_minutes=0.005), engine=engine,
                              sleep=SleepRecorder()).run()
    finally:
        release.set()

    assert run.status == RunStatus.FAILED
    assert run.timed_out
    assert run.failed_stage == "image-build"
    assert run.failure.kind == FailureKind.TIMEOUT
    assert run.stage_names() == ["image-build"]
    engine.close.assert_called_once()
    engine.run_container.assert_not_called()
    assert 0 < engine.build_image.call_args.kwargs["timeout_seconds"] <= 0.3


def test_build_skipped_when_budget_already_spent(checkout, engine):
    spent = MagicMock(seconds=0.0)
    spent.expired.return_value = True
    spent.remaining.return_value = 0.0

    with patch("release_gate.container.smoke_controller.Deadline", return_value=spent):
        run = SmokeController(make_settings(checkout), engine=engine, sleep=SleepRecorder()).run()

    assert run.timed_out
    assert run.stage_names() == ["image-build"]
    engine.build_image.assert_not_called()


def test_engine_build_passes_read_timeout_and_close_drops_client():
    client = MagicMock()
    image = MagicMock(short_id="sha256:ab12")
    client.images.build.return_value = (image, [{"stream": "Step 1/3\n"}])
    engine = DockerEngine(client=client)

    assert engine.build_image(".", "Dockerfile", "ceresdb-server:latest", timeout_seconds=42.7) == "sha256:ab12"
    assert client.images.build.call_args.kwargs["timeout"] == 42

    engine.close()
    client.close.assert_called_once()
    engine.close()
    client.close.assert_called_once()
