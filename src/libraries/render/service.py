"""Client facing facade wiring the render orchestration components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal, Mapping

import structlog

from .base import DuplicateJobError, JobNotFoundError
from .content import read_timing
from .dispatcher import Dispatcher
from .idempotency import IdempotencyIndex
from .job_store import JobStore
from .models import Job, JobStatus, ProgressSnapshot, SweepResult, utcnow
from .planner import PartitionPlanner
from .progress import ProgressAggregator
from .reaper import StuckJobReaper
from .requests import RenderStartRequest

log = structlog.get_logger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)

StartStatus = Literal["accepted", "duplicate"]


@dataclass(frozen=True, slots=True)
class StartResult:
    job_id: str
    status: StartStatus

    def to_dict(self) -> dict[str, str]:
        return {"job_id": self.job_id, "status": self.status}


class RenderOrchestrator:
    """Start render jobs, report their progress and recover stuck ones."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        aggregator: ProgressAggregator,
        reaper: StuckJobReaper,
        *,
        planner: PartitionPlanner | None = None,
        index: IdempotencyIndex | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.aggregator = aggregator
        self.reaper = reaper
        self.planner = planner or PartitionPlanner()
        self.index = index or IdempotencyIndex(store)
        self._retention = retention
        self._clock = clock or utcnow

    def start(self, request: RenderStartRequest | Mapping[str, Any]) -> StartResult:
        """Create and dispatch a render job, or return the live duplicate.

        Validation happens before anything is persisted. Dispatch failures
        leave the new job ``failed`` and propagate as
        :class:`~libraries.render.base.RenderDispatchError`.
        """

        params = RenderStartRequest.parse(request)
        timing = read_timing(params.composition, fps_override=params.fps)
        duration_ms = params.duration_ms or timing.duration_ms
        plan = self.planner.plan(duration_ms, timing.fps)

        key = self.index.fingerprint(
            {
                "idempotency_key": params.idempotency_key,
                "content_id": params.content_id,
                "engine": params.engine,
                "duration_ms": duration_ms,
                "fps": timing.fps,
                "payload": params.composition,
            }
        )
        existing = self.index.lookup(key)
        if existing is not None and existing.status is not JobStatus.FAILED:
            log.info(
                "render.start.duplicate",
                job_id=existing.job_id,
                status=existing.status.value,
            )
            return StartResult(job_id=existing.job_id, status="duplicate")
        if existing is not None:
            log.info("render.start.retry_after_failure", previous_job_id=existing.job_id)

        job = Job.new_queued(
            idempotency_key=key,
            retention=self._retention,
            now=self._clock(),
            content_id=params.content_id,
            project_id=params.project_id,
            owner_id=params.owner_id,
            engine=params.engine,
            fps=timing.fps,
            duration_ms=duration_ms,
            credentials=dict(params.credentials),
            payload=dict(params.composition),
        )
        try:
            self.store.create_queued(job)
        except DuplicateJobError as exc:
            log.info("render.start.duplicate", job_id=exc.existing_job_id, raced=True)
            return StartResult(job_id=exc.existing_job_id, status="duplicate")

        log.info(
            "render.start.accepted",
            job_id=job.job_id,
            content_id=job.content_id,
            engine=job.engine,
            total_frames=plan.total_frames,
            shard_size=plan.shard_size,
        )
        self.dispatcher.submit(job, plan)
        return StartResult(job_id=job.job_id, status="accepted")

    def status(self, job_id: str) -> ProgressSnapshot:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(
                f"Render job '{job_id}' was not found.",
                hint="Jobs expire after the retention window.",
                context={"job_id": job_id},
            )
        return self.aggregator.poll(job)

    def sweep(self, stuck_minutes: int | None = None) -> SweepResult:
        return self.reaper.sweep(stuck_minutes=stuck_minutes)

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "store": self.store.stats.to_dict(),
            "dispatch_timeout": self.dispatcher.timeout,
            "stuck_minutes": self.reaper.stuck_minutes,
        }

    def close(self) -> None:
        self.dispatcher.close()
        self.aggregator.close()


__all__ = ["DEFAULT_RETENTION", "RenderOrchestrator", "StartResult"]
