"""Submit planned render work to the compute fleet."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

import structlog

from .base import (
    ComputeFleet,
    FleetRenderRequest,
    FleetSubmission,
    RenderDispatchError,
    RenderDispatchTimeoutError,
)
from .job_store import JobStore
from .models import ErrorCode, ExternalHandle, Job, ShardPlan

log = structlog.get_logger(__name__)

DEFAULT_DISPATCH_TIMEOUT = 90.0
DEFAULT_OUTPUT_PREFIX = "renders"


def build_output_key(job: Job, *, prefix: str = DEFAULT_OUTPUT_PREFIX) -> str:
    owner = job.owner_id or "shared"
    return f"{prefix.strip('/')}/owner-{owner}/{job.job_id}.mp4"


class Dispatcher:
    """Hand a job to the compute fleet under a bounded wait.

    Submission is expected to return quickly even though rendering takes much
    longer, so the wait is bounded by ``timeout`` independently of whatever
    execution deadline the fleet enforces.
    """

    def __init__(
        self,
        fleet: ComputeFleet,
        store: JobStore,
        *,
        output_bucket: str,
        output_prefix: str = DEFAULT_OUTPUT_PREFIX,
        timeout: float = DEFAULT_DISPATCH_TIMEOUT,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("Dispatch timeout must be positive.")
        self._fleet = fleet
        self._store = store
        self._output_bucket = output_bucket
        self._output_prefix = output_prefix
        self._timeout = timeout
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="render-dispatch"
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def submit(self, job: Job, plan: ShardPlan) -> ExternalHandle:
        """Start the render for ``job`` and move it to ``processing``.

        On any submission failure the job is force-failed before the error is
        re-raised, so no ``queued`` job is left without external work.
        """

        request = FleetRenderRequest(
            job_id=job.job_id,
            composition=dict(job.payload or {}),
            credentials=dict(job.credentials),
            shard_size=plan.shard_size,
            total_frames=plan.total_frames,
            fps=job.fps,
            output_bucket=self._output_bucket,
            output_key=build_output_key(job, prefix=self._output_prefix),
        )
        log.info(
            "render.dispatch.submit",
            job_id=job.job_id,
            shard_size=plan.shard_size,
            shard_count=plan.shard_count,
            total_frames=plan.total_frames,
            timeout=self._timeout,
        )

        future: Future[FleetSubmission] = self._executor.submit(
            self._fleet.start_render, request
        )
        try:
            submission = future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            message = f"Render submission did not return within {self._timeout:g}s."
            self._fail(job, ErrorCode.RENDER_START_TIMEOUT, message)
            raise RenderDispatchTimeoutError(
                message,
                hint="The fleet may be cold starting; retry the request.",
                context={"job_id": job.job_id, "timeout": self._timeout},
            ) from exc
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            self._fail(job, ErrorCode.RENDER_START_FAILED, message)
            raise RenderDispatchError(
                f"Failed to start render: {message}",
                context={"job_id": job.job_id},
            ) from exc

        handle = ExternalHandle(
            render_id=submission["render_id"],
            bucket=submission["bucket"],
            staging_key=submission.get("staging_key"),
            output_bucket=request["output_bucket"],
            output_key=request["output_key"],
            shard_size=plan.shard_size,
            shard_count=plan.shard_count,
            total_frames=plan.total_frames,
            fps=job.fps,
        )
        if not self._store.mark_processing(job.job_id, handle):
            log.warning(
                "render.dispatch.transition_skipped",
                job_id=job.job_id,
                render_id=handle.render_id,
            )
        log.info(
            "render.dispatch.accepted",
            job_id=job.job_id,
            render_id=handle.render_id,
            bucket=handle.bucket,
        )
        return handle

    def _fail(self, job: Job, code: str, message: str) -> None:
        log.error("render.dispatch.failed", job_id=job.job_id, code=code, error=message)
        try:
            self._store.mark_failed(job.job_id, code, message)
        except Exception:
            # The reaper fails the job later if this write never lands.
            log.exception("render.dispatch.mark_failed_error", job_id=job.job_id)


__all__ = ["DEFAULT_DISPATCH_TIMEOUT", "Dispatcher", "build_output_key"]
