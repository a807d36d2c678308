"""Render job CLI commands."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog
import typer

from apps.framefleet.config import load_profile
from apps.framefleet.settings import OrchestratorSettings, build_orchestrator
from apps.framefleet.utils.errors import (
    FrameFleetIOError,
    FrameFleetRuntimeError,
    FrameFleetValidationError,
    from_orchestration_error,
)
from libraries.render.base import RenderOrchestrationError
from libraries.render.content import read_timing
from libraries.render.models import ProgressSnapshot
from libraries.render.planner import PartitionPlanner
from libraries.render.service import RenderOrchestrator

log = structlog.get_logger(__name__)

app = typer.Typer(name="render", help="Render job orchestration commands.")

TERMINAL_SNAPSHOT_STATES = ("completed", "failed")

OrchestratorFactory = Callable[[str | None], RenderOrchestrator]


def _default_factory(profile: str | None) -> RenderOrchestrator:
    context = load_profile(profile=profile)
    return build_orchestrator(OrchestratorSettings.from_profile(context))


orchestrator_factory: OrchestratorFactory = _default_factory


@contextmanager
def _orchestrator(profile: str | None) -> Iterator[RenderOrchestrator]:
    orchestrator = orchestrator_factory(profile)
    try:
        yield orchestrator
    except RenderOrchestrationError as exc:
        raise from_orchestration_error(exc) from exc
    finally:
        orchestrator.close()


def _read_composition(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FrameFleetIOError(f"Unable to read composition '{path}': {exc}") from exc
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise FrameFleetValidationError(
            f"Composition '{path}' is not valid JSON: {exc}"
        ) from exc
    if not isinstance(document, dict):
        raise FrameFleetValidationError(
            f"Composition '{path}' must contain a JSON object."
        )
    return document


def _echo_snapshot(snapshot: ProgressSnapshot, *, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(snapshot.to_response(), indent=2))
        return
    if snapshot.status == "completed":
        url = snapshot.output.url if snapshot.output else None
        typer.secho(
            f"{snapshot.job_id}: completed ({url or 'no download URL'})",
            fg=typer.colors.GREEN,
        )
    elif snapshot.status == "failed":
        typer.secho(
            f"{snapshot.job_id}: failed [{snapshot.error_code}] {snapshot.error_message}",
            fg=typer.colors.RED,
        )
    elif snapshot.status == "rendering":
        typer.echo(
            f"{snapshot.job_id}: {snapshot.stage} {snapshot.percent}% "
            f"({snapshot.shards_done}/{snapshot.shards_total} shards)"
        )
    else:
        typer.echo(f"{snapshot.job_id}: queued")


@app.command("plan")
def plan(
    composition: Path | None = typer.Argument(
        None, help="Content descriptor JSON used to derive the duration."
    ),
    duration_ms: int | None = typer.Option(
        None, "--duration-ms", help="Total duration when no composition is given."
    ),
    fps: int | None = typer.Option(None, "--fps", help="Frame rate override."),
    max_workers: int = typer.Option(200, "--max-workers", help="Worker ceiling."),
) -> None:
    """Show how a render would be split across workers."""

    if composition is not None:
        timing = read_timing(_read_composition(composition), fps_override=fps)
        total_ms = duration_ms or timing.duration_ms
        resolved_fps = timing.fps
    else:
        total_ms = duration_ms or 0
        resolved_fps = fps or 30

    try:
        shard_plan = PartitionPlanner(max_workers=max_workers).plan(total_ms, resolved_fps)
    except RenderOrchestrationError as exc:
        raise from_orchestration_error(exc) from exc
    except ValueError as exc:
        raise FrameFleetValidationError(str(exc)) from exc

    typer.echo(
        f"{shard_plan.total_frames} frames @ {resolved_fps}fps -> "
        f"{shard_plan.shard_count} shards of {shard_plan.shard_size} frames"
    )


@app.command("start")
def start(
    composition: Path = typer.Argument(..., help="Content descriptor JSON file."),
    content_id: str = typer.Option(..., "--content-id", help="Content identity."),
    engine: str = typer.Option("remotion", "--engine", help="Renderer identifier."),
    fps: int | None = typer.Option(None, "--fps", help="Frame rate override."),
    project_id: str | None = typer.Option(None, "--project-id"),
    owner_id: str | None = typer.Option(None, "--owner-id"),
    idempotency_key: str | None = typer.Option(
        None, "--idempotency-key", help="Reuse a caller supplied idempotency key."
    ),
    wait: bool = typer.Option(
        False, "--wait/--no-wait", help="Poll until the job reaches a terminal state."
    ),
    poll_interval: float = typer.Option(2.0, "--poll-interval", min=0.0),
    profile: str | None = typer.Option(None, "--profile", help="Configuration profile."),
) -> None:
    """Start a render job."""

    request = {
        "content_id": content_id,
        "engine": engine,
        "composition": _read_composition(composition),
        "fps": fps,
        "project_id": project_id,
        "owner_id": owner_id,
        "idempotency_key": idempotency_key,
    }
    with _orchestrator(profile) as orchestrator:
        result = orchestrator.start(request)
        colour = typer.colors.GREEN if result.status == "accepted" else typer.colors.YELLOW
        typer.secho(f"Job {result.job_id} {result.status}.", fg=colour)
        if not wait:
            return
        snapshot = orchestrator.status(result.job_id)
        while snapshot.status not in TERMINAL_SNAPSHOT_STATES:
            _echo_snapshot(snapshot, as_json=False)
            time.sleep(poll_interval)
            snapshot = orchestrator.status(result.job_id)
        _echo_snapshot(snapshot, as_json=False)
        if snapshot.status == "failed":
            raise FrameFleetRuntimeError(
                f"Render job {result.job_id} failed: {snapshot.error_message}"
            )


@app.command("status")
def status(
    job_id: str = typer.Argument(..., help="Job identifier returned by start."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status document."),
    profile: str | None = typer.Option(None, "--profile", help="Configuration profile."),
) -> None:
    """Report the progress of a render job."""

    with _orchestrator(profile) as orchestrator:
        _echo_snapshot(orchestrator.status(job_id), as_json=as_json)


@app.command("sweep")
def sweep(
    stuck_minutes: int | None = typer.Option(
        None, "--stuck-minutes", min=1, help="Override the staleness deadline."
    ),
    profile: str | None = typer.Option(None, "--profile", help="Configuration profile."),
) -> None:
    """Fail jobs whose progress stopped advancing."""

    with _orchestrator(profile) as orchestrator:
        result = orchestrator.sweep(stuck_minutes=stuck_minutes)
    log.info("render.cli.sweep", **result.to_dict())
    if result.lock_free:
        typer.secho(
            "Lease table unavailable; swept without a lock.", fg=typer.colors.YELLOW
        )
    elif not result.lock_acquired:
        typer.secho(
            "Another sweep holds the lease; nothing was changed.", fg=typer.colors.YELLOW
        )
    typer.echo(json.dumps(result.to_dict(), indent=2))
