"""Tests for the FrameFleet Typer application and its exit codes."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import pytest_mock
from typer.testing import CliRunner

from apps.framefleet import __main__ as cli_main
from apps.framefleet import app as framefleet_app
from apps.framefleet.render import commands
from apps.framefleet.utils.errors import ExitCode
from libraries.render.base import FleetError
from libraries.render.models import JobStatus

runner = CliRunner()


@pytest.fixture
def composition(tmp_path: Path, descriptor) -> Path:
    path = tmp_path / "composition.json"
    path.write_text(json.dumps(descriptor), encoding="utf-8")
    return path


@pytest.fixture
def patched_factory(monkeypatch: pytest.MonkeyPatch, build_orchestrator) -> list:
    profiles: list = []

    def _factory(profile):
        profiles.append(profile)
        return build_orchestrator()

    monkeypatch.setattr(commands, "orchestrator_factory", _factory)
    return profiles


def test_plan_from_duration() -> None:
    result = runner.invoke(framefleet_app, ["render", "plan", "--duration-ms", "24000"])

    assert result.exit_code == 0
    assert "720 frames @ 30fps -> 12 shards of 60 frames" in result.output


def test_plan_from_composition(composition: Path) -> None:
    result = runner.invoke(
        framefleet_app, ["render", "plan", str(composition), "--fps", "60"]
    )

    assert result.exit_code == 0
    assert "1440 frames @ 60fps -> 24 shards of 60 frames" in result.output


def test_start_and_status(composition: Path, patched_factory, store) -> None:
    started = runner.invoke(
        framefleet_app,
        [
            "render",
            "start",
            str(composition),
            "--content-id",
            "content-1",
            "--profile",
            "staging",
        ],
    )

    assert started.exit_code == 0, started.output
    (job,) = store.all_jobs()
    assert f"Job {job.job_id} accepted." in started.output
    assert job.status is JobStatus.PROCESSING
    assert patched_factory == ["staging"]

    status = runner.invoke(framefleet_app, ["render", "status", job.job_id, "--json"])

    assert status.exit_code == 0
    document = json.loads(status.stdout[status.stdout.index("{") :])
    assert document == {"job_id": job.job_id, "status": "queued", "progress": 0}


def test_start_with_wait_polls_until_completion(
    composition: Path, patched_factory, fleet
) -> None:
    fleet.steps = 2

    result = runner.invoke(
        framefleet_app,
        [
            "render",
            "start",
            str(composition),
            "--content-id",
            "content-1",
            "--wait",
            "--poll-interval",
            "0",
        ],
    )

    assert result.exit_code == 0, result.output
    assert ": completed (https://blobs.invalid/" in result.output


def test_sweep_prints_result(patched_factory) -> None:
    result = runner.invoke(framefleet_app, ["render", "sweep", "--stuck-minutes", "5"])

    assert result.exit_code == 0
    assert '"marked_stuck": 0' in result.output


def test_main_maps_missing_job_to_validation_exit_code(
    patched_factory, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli_main.main(["render", "status", "ff-missing"])

    assert exit_code == int(ExitCode.VALIDATION)
    assert "Validation error: Render job 'ff-missing' was not found." in capsys.readouterr().err


def test_main_maps_dispatch_failure_to_external_exit_code(
    composition: Path, patched_factory, fleet
) -> None:
    fleet.start_error = FleetError("quota exceeded")

    exit_code = cli_main.main(
        ["render", "start", str(composition), "--content-id", "content-1"]
    )

    assert exit_code == int(ExitCode.EXTERNAL)


def test_main_rejects_unreadable_composition(tmp_path: Path, patched_factory) -> None:
    exit_code = cli_main.main(
        ["render", "start", str(tmp_path / "missing.json"), "--content-id", "c"]
    )

    assert exit_code == int(ExitCode.IO)
    assert patched_factory == []


def test_main_rejects_invalid_json(tmp_path: Path, patched_factory) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")

    exit_code = cli_main.main(["render", "start", str(broken), "--content-id", "c"])

    assert exit_code == int(ExitCode.VALIDATION)


def test_main_returns_success(patched_factory) -> None:
    assert cli_main.main(["render", "plan", "--duration-ms", "1000"]) == 0


def test_main_reports_usage_errors(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli_main.main(["render", "sweep", "--stuck-minutes", "0"])

    assert exit_code == 2
    assert "--stuck-minutes" in capsys.readouterr().err


def test_web_serve_invokes_uvicorn(mocker: pytest_mock.MockerFixture) -> None:
    uvicorn_mock = SimpleNamespace(run=Mock())
    mocker.patch("apps.framefleet.app._load_uvicorn", return_value=uvicorn_mock)

    result = runner.invoke(
        framefleet_app,
        ["web", "serve", "--host", "0.0.0.0", "--port", "9000", "--log-level", "debug"],
    )

    assert result.exit_code == 0
    uvicorn_mock.run.assert_called_once_with(
        "apps.framefleet.web.render:app",
        host="0.0.0.0",
        port=9000,
        reload=False,
        log_level="debug",
    )
