from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from libraries.render.base import (
    FleetError,
    JobNotFoundError,
    RenderDispatchError,
    RenderValidationError,
)
from libraries.render.models import ErrorCode, JobStatus


def _request(descriptor, **overrides):
    request = {
        "content_id": "content-1",
        "engine": "Remotion",
        "composition": descriptor,
        "owner_id": "user-7",
        "credentials": {"api_key": "secret"},
    }
    request.update(overrides)
    return request


def test_start_dispatches_a_new_job(orchestrator, fleet, descriptor) -> None:
    result = orchestrator.start(_request(descriptor))

    assert result.status == "accepted"
    job = orchestrator.store.get_job(result.job_id)
    assert job.status is JobStatus.PROCESSING
    assert job.engine == "remotion"
    assert job.duration_ms == 24000
    assert fleet.requests[0]["shard_size"] == 60
    assert fleet.requests[0]["total_frames"] == 720
    assert fleet.requests[0]["output_key"].startswith("renders/owner-user-7/")


def test_repeated_start_returns_the_live_job(orchestrator, fleet, descriptor) -> None:
    first = orchestrator.start(_request(descriptor))
    second = orchestrator.start(_request(descriptor))

    assert second.job_id == first.job_id
    assert second.status == "duplicate"
    assert len(fleet.requests) == 1


def test_concurrent_starts_collapse_onto_one_job(orchestrator, fleet, descriptor) -> None:
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: orchestrator.start(_request(descriptor)), range(8)))

    assert len({result.job_id for result in results}) == 1
    assert [result.status for result in results].count("accepted") == 1
    assert len(fleet.requests) == 1


def test_different_content_creates_a_separate_job(orchestrator, descriptor) -> None:
    first = orchestrator.start(_request(descriptor))
    second = orchestrator.start(_request(descriptor, content_id="content-2"))

    assert first.job_id != second.job_id
    assert second.status == "accepted"


def test_edited_late_scene_starts_a_new_job(orchestrator, fleet) -> None:
    scenes = [
        {"id": f"scene-{n}", "duration_ms": 1000, "asset": f"https://cdn.invalid/{n}.png"}
        for n in range(60)
    ]
    edited = [dict(scene) for scene in scenes]
    edited[-1]["asset"] = "https://cdn.invalid/replacement.png"

    first = orchestrator.start(_request({"scenes": scenes, "output": {"fps": 30}}))
    second = orchestrator.start(_request({"scenes": edited, "output": {"fps": 30}}))

    assert second.status == "accepted"
    assert second.job_id != first.job_id
    assert len(fleet.requests) == 2


def test_invalid_request_creates_nothing(orchestrator, fleet, store, descriptor) -> None:
    with pytest.raises(RenderValidationError) as excinfo:
        orchestrator.start({"composition": descriptor})

    assert excinfo.value.status_code == 422
    assert excinfo.value.context["errors"][0]["field"] == "content_id"
    assert list(store.all_jobs()) == []
    assert fleet.requests == []


def test_render_over_the_ceiling_is_rejected(orchestrator, store, descriptor) -> None:
    descriptor["total_duration_ms"] = 3 * 60 * 60 * 1000

    with pytest.raises(RenderValidationError):
        orchestrator.start(_request(descriptor))

    assert list(store.all_jobs()) == []


def test_failed_job_allows_a_retry(orchestrator, fleet, descriptor) -> None:
    fleet.start_error = FleetError("cold start")
    with pytest.raises(RenderDispatchError):
        orchestrator.start(_request(descriptor))
    failed = next(iter(orchestrator.store.all_jobs()))
    assert failed.status is JobStatus.FAILED
    assert failed.error_code == ErrorCode.RENDER_START_FAILED

    fleet.start_error = None
    retry = orchestrator.start(_request(descriptor))

    assert retry.status == "accepted"
    assert retry.job_id != failed.job_id


def test_completed_job_is_returned_for_equal_requests(
    orchestrator, fleet, descriptor
) -> None:
    first = orchestrator.start(_request(descriptor))
    render_id = orchestrator.store.get_job(first.job_id).external_handle.render_id
    fleet.complete(render_id)
    assert orchestrator.status(first.job_id).status == "completed"

    again = orchestrator.start(_request(descriptor))

    assert again.to_dict() == {"job_id": first.job_id, "status": "duplicate"}


def test_status_of_unknown_job(orchestrator) -> None:
    with pytest.raises(JobNotFoundError) as excinfo:
        orchestrator.status("ff-missing")

    assert excinfo.value.status_code == 404


def test_status_runs_a_render_to_completion(orchestrator, fleet, descriptor) -> None:
    fleet.steps = 3
    result = orchestrator.start(_request(descriptor))

    seen = [orchestrator.status(result.job_id) for _ in range(3)]

    assert [snapshot.status for snapshot in seen] == ["rendering", "rendering", "completed"]
    assert seen[0].percent <= seen[1].percent
    job = orchestrator.store.get_job(result.job_id)
    assert job.credentials == {}
    assert job.payload is None


def test_sweep_and_health(orchestrator, clock, descriptor) -> None:
    result = orchestrator.start(_request(descriptor))
    clock.advance(minutes=45)

    sweep = orchestrator.sweep()
    health = orchestrator.health()

    assert sweep.marked_stuck == 1
    assert orchestrator.status(result.job_id).error_code == ErrorCode.TIMEOUT_STUCK
    assert health["status"] == "ok"
    assert health["store"]["created"] == 1
    assert health["stuck_minutes"] == 30
