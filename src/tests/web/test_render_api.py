from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from apps.framefleet.web import render
from libraries.render.base import FleetError
from libraries.render.models import ErrorCode


@pytest.fixture
def client(orchestrator) -> Iterator[TestClient]:
    render.app.dependency_overrides[render.get_orchestrator] = lambda: orchestrator
    try:
        yield TestClient(render.app)
    finally:
        render.app.dependency_overrides.clear()


def _body(descriptor, **overrides):
    body = {"content_id": "content-1", "composition": descriptor}
    body.update(overrides)
    return body


def test_start_job_returns_accepted(client, descriptor) -> None:
    response = client.post("/jobs", json=_body(descriptor))

    assert response.status_code == 202
    payload = response.json()
    assert payload["status"] == "accepted"
    assert payload["job_id"].startswith("ff-")


def test_duplicate_start_returns_existing_job(client, descriptor) -> None:
    first = client.post("/jobs", json=_body(descriptor)).json()

    response = client.post("/jobs", json=_body(descriptor))

    assert response.status_code == 200
    assert response.json() == {"job_id": first["job_id"], "status": "duplicate"}


def test_invalid_request_uses_error_envelope(client, descriptor) -> None:
    response = client.post("/jobs", json={"composition": descriptor})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["context"]["errors"][0]["field"] == "content_id"


def test_non_object_body_is_rejected(client) -> None:
    response = client.post("/jobs", json=["not", "an", "object"])

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_dispatch_failure_maps_to_bad_gateway(client, fleet, descriptor) -> None:
    fleet.start_error = FleetError("quota exceeded")

    response = client.post("/jobs", json=_body(descriptor))

    assert response.status_code == 502
    assert response.json()["error"]["code"] == ErrorCode.RENDER_START_FAILED


def test_status_reports_progress_and_completion(client, fleet, orchestrator, descriptor) -> None:
    job_id = client.post("/jobs", json=_body(descriptor)).json()["job_id"]
    render_id = orchestrator.store.get_job(job_id).external_handle.render_id

    assert client.get(f"/jobs/{job_id}").json() == {
        "job_id": job_id,
        "status": "queued",
        "progress": 0,
    }

    fleet.report(render_id, frames_rendered=360)
    rendering = client.get(f"/jobs/{job_id}").json()
    assert rendering["status"] == "rendering"
    assert rendering["progress"]["percent"] == 30
    assert rendering["progress"]["stage"] == "Encoding"

    fleet.complete(render_id)
    completed = client.get(f"/jobs/{job_id}").json()
    assert completed["status"] == "completed"
    assert completed["output"]["size_bytes"] == 1024
    assert completed["output"]["url"].startswith("https://blobs.invalid/")


def test_unknown_job_is_not_found(client) -> None:
    response = client.get("/jobs/ff-missing")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_admin_sweep(client, clock, descriptor) -> None:
    job_id = client.post("/jobs", json=_body(descriptor)).json()["job_id"]
    clock.advance(minutes=10)

    response = client.post("/admin/sweep", params={"stuck_minutes": 5})

    assert response.status_code == 200
    assert response.json()["marked_stuck"] == 1
    assert response.json()["lock_acquired"] is True
    assert response.json()["lock_free"] is False
    failed = client.get(f"/jobs/{job_id}").json()
    assert failed["error"]["code"] == ErrorCode.TIMEOUT_STUCK


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_unexpected_errors_become_internal_error(mocker, orchestrator) -> None:
    mocker.patch.object(orchestrator, "health", side_effect=KeyError("boom"))
    render.app.dependency_overrides[render.get_orchestrator] = lambda: orchestrator
    try:
        response = TestClient(render.app, raise_server_exceptions=False).get("/health")
    finally:
        render.app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {
        "error": {
            "code": "INTERNAL_ERROR",
            "message": "Unexpected error while handling the request.",
        }
    }


def test_periodic_sweeper_survives_unexpected_errors() -> None:
    calls: list[int] = []

    class FlakyOrchestrator:
        def sweep(self):
            calls.append(len(calls))
            if len(calls) == 1:
                raise ValueError("malformed job item")
            return SimpleNamespace(to_dict=lambda: {"checked": 0, "marked_stuck": 0})

    async def run() -> None:
        task = asyncio.create_task(render._sweep_periodically(FlakyOrchestrator(), 0))
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    with capture_logs() as logs:
        asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert len(calls) >= 2
    crashed = [entry for entry in logs if entry["event"] == "render.api.sweep.crashed"]
    assert crashed[0]["log_level"] == "error"
