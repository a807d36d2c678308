"""Fold per-worker progress artifacts into one client-facing status."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import structlog

from .base import BlobHead, BlobStore, ComputeFleet, FleetProgress
from .job_store import JobStore
from .models import (
    DEFAULT_CONTENT_TYPE,
    ErrorCode,
    ExternalHandle,
    Job,
    JobStatus,
    OutputRef,
    OutputView,
    ProgressSnapshot,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_PRESIGN_EXPIRES = 86400
DEFAULT_IO_TIMEOUT = 30.0
MAX_DISPLAY_PERCENT = 99
FAILURE_MESSAGE_LIMIT = 500


@dataclass(frozen=True, slots=True)
class ProgressWeights:
    """Relative weight of each render phase in the blended percentage."""

    render: float = 0.6
    encode: float = 0.3
    combine: float = 0.1

    def __post_init__(self) -> None:
        if min(self.render, self.encode, self.combine) < 0:
            raise ValueError("Progress weights cannot be negative.")
        if self.render + self.encode + self.combine <= 0:
            raise ValueError("At least one progress weight must be positive.")

    def blend(self, render: float, encode: float, combine: float) -> float:
        total = self.render + self.encode + self.combine
        return (self.render * render + self.encode * encode + self.combine * combine) / total


DEFAULT_WEIGHTS = ProgressWeights()


def _fraction(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return max(0.0, min(1.0, done / total))


def stage_for(percent: int) -> str:
    if percent < 5:
        return "Initializing"
    if percent < 30:
        return "Rendering"
    if percent < 80:
        return "Encoding"
    return "Combining"


def blended_percent(
    progress: FleetProgress,
    handle: ExternalHandle,
    *,
    weights: ProgressWeights = DEFAULT_WEIGHTS,
    ceiling: int = MAX_DISPLAY_PERCENT,
) -> int:
    """Return the weighted completion percentage, clamped below completion."""

    shards_total = progress.get("shards_total") or handle.shard_count
    raw = weights.blend(
        _fraction(int(progress.get("frames_rendered") or 0), handle.total_frames),
        _fraction(int(progress.get("frames_encoded") or 0), handle.total_frames),
        _fraction(int(progress.get("shards_done") or 0), shards_total),
    )
    return max(0, min(ceiling, round(raw * 100)))


class ProgressAggregator:
    """Derive a :class:`ProgressSnapshot` for a job from fleet signals.

    Only ``Job.status`` is authoritative. Snapshots are recomputed on every
    poll; the persisted ``progress_percent`` high-water mark keeps successive
    polls from moving backwards. Terminal transitions performed here go through
    the store's conditional writes, so racing pollers are harmless.
    """

    def __init__(
        self,
        fleet: ComputeFleet,
        blobs: BlobStore,
        store: JobStore,
        *,
        weights: ProgressWeights = DEFAULT_WEIGHTS,
        presign_expires: int = DEFAULT_PRESIGN_EXPIRES,
        io_timeout: float = DEFAULT_IO_TIMEOUT,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._fleet = fleet
        self._blobs = blobs
        self._store = store
        self._weights = weights
        self._presign_expires = presign_expires
        self._io_timeout = io_timeout
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="render-progress"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _bounded(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self._io_timeout)
        finally:
            future.cancel()

    def poll(self, job: Job) -> ProgressSnapshot:
        if job.status is JobStatus.COMPLETED:
            return self._completed(job.job_id, job.output_ref)
        if job.status is JobStatus.FAILED:
            return self._failed(job.job_id, job.error_code, job.error_message)

        handle = job.external_handle
        if handle is None:
            return self._pending(job)

        try:
            progress = self._bounded(
                self._fleet.get_progress, handle.render_id, handle.bucket
            )
        except Exception as exc:
            log.warning(
                "render.progress.read_failed",
                job_id=job.job_id,
                render_id=handle.render_id,
                error=str(exc) or type(exc).__name__,
            )
            return self._pending(job)
        if progress is None:
            return self._pending(job)

        if progress.get("fatal_error"):
            message = str(progress.get("error_message") or "Render failed")
            return self._fail(
                job, ErrorCode.RENDER_FAILED, message[:FAILURE_MESSAGE_LIMIT]
            )
        if progress.get("done"):
            return self._finalize(job, handle, progress)
        return self._rendering(job, handle, progress)

    def _pending(self, job: Job) -> ProgressSnapshot:
        if job.progress_percent > 0:
            percent = min(job.progress_percent, MAX_DISPLAY_PERCENT)
            return ProgressSnapshot(
                job_id=job.job_id,
                status="rendering",
                percent=percent,
                stage=stage_for(percent),
                shards_total=job.external_handle.shard_count
                if job.external_handle
                else 0,
            )
        return ProgressSnapshot(job_id=job.job_id, status="queued")

    def _rendering(
        self, job: Job, handle: ExternalHandle, progress: FleetProgress
    ) -> ProgressSnapshot:
        computed = blended_percent(progress, handle, weights=self._weights)
        percent = max(computed, min(job.progress_percent, MAX_DISPLAY_PERCENT))
        stage = stage_for(percent)
        if percent > job.progress_percent:
            try:
                self._store.record_progress(job.job_id, percent, stage)
            except Exception as exc:
                log.warning(
                    "render.progress.record_failed", job_id=job.job_id, error=str(exc)
                )
        return ProgressSnapshot(
            job_id=job.job_id,
            status="rendering",
            percent=percent,
            stage=stage,
            frames_rendered=int(progress.get("frames_rendered") or 0),
            frames_encoded=int(progress.get("frames_encoded") or 0),
            shards_done=int(progress.get("shards_done") or 0),
            shards_total=int(progress.get("shards_total") or handle.shard_count),
        )

    def _finalizing(self, job: Job, handle: ExternalHandle) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=job.job_id,
            status="rendering",
            percent=MAX_DISPLAY_PERCENT,
            stage="Finalizing",
            frames_rendered=handle.total_frames,
            frames_encoded=handle.total_frames,
            shards_done=handle.shard_count,
            shards_total=handle.shard_count,
        )

    def _locate_output(
        self, handle: ExternalHandle, progress: FleetProgress
    ) -> OutputRef | None:
        """Find the finished artifact, copying it out of staging if needed.

        Returns ``None`` only when the artifact provably does not exist.
        Transient blob store errors propagate so the caller can retry later.
        """

        duration = progress.get("time_to_finish_ms")
        alternate_url = progress.get("output_url") or None
        staging_bucket = progress.get("output_bucket") or handle.bucket
        staging_key = progress.get("output_key") or handle.staging_key

        head: BlobHead | None = self._bounded(
            self._blobs.head, handle.output_bucket, handle.output_key
        )
        if head is None and staging_key:
            try:
                self._bounded(
                    self._blobs.copy,
                    staging_bucket,
                    staging_key,
                    handle.output_bucket,
                    handle.output_key,
                    content_type=DEFAULT_CONTENT_TYPE,
                )
                log.info(
                    "render.progress.copied",
                    source=f"{staging_bucket}/{staging_key}",
                    destination=f"{handle.output_bucket}/{handle.output_key}",
                )
            except Exception as exc:
                log.warning(
                    "render.progress.copy_failed",
                    source=f"{staging_bucket}/{staging_key}",
                    error=str(exc) or type(exc).__name__,
                )
            head = self._bounded(self._blobs.head, handle.output_bucket, handle.output_key)
        if head is not None:
            return OutputRef(
                bucket=handle.output_bucket,
                key=handle.output_key,
                size_bytes=head["size_bytes"],
                content_type=head.get("content_type") or DEFAULT_CONTENT_TYPE,
                duration_ms=duration,
                alternate_url=alternate_url,
            )

        if staging_key:
            staged = self._bounded(self._blobs.head, staging_bucket, staging_key)
            if staged is not None:
                return OutputRef(
                    bucket=staging_bucket,
                    key=staging_key,
                    size_bytes=staged["size_bytes"],
                    content_type=staged.get("content_type") or DEFAULT_CONTENT_TYPE,
                    duration_ms=duration,
                    alternate_url=alternate_url,
                )

        if alternate_url:
            return self._alternate_output(progress)
        return None

    @staticmethod
    def _alternate_output(progress: FleetProgress) -> OutputRef:
        return OutputRef(
            bucket="",
            key="",
            size_bytes=progress.get("output_size"),
            duration_ms=progress.get("time_to_finish_ms"),
            alternate_url=progress.get("output_url"),
        )

    def _finalize(
        self, job: Job, handle: ExternalHandle, progress: FleetProgress
    ) -> ProgressSnapshot:
        try:
            output = self._locate_output(handle, progress)
        except Exception as exc:
            log.warning(
                "render.progress.finalize_deferred",
                job_id=job.job_id,
                error=str(exc) or type(exc).__name__,
            )
            if not progress.get("output_url"):
                return self._finalizing(job, handle)
            output = self._alternate_output(progress)

        if output is None:
            return self._fail(
                job,
                ErrorCode.OUTPUT_MISSING,
                "Render reported completion but no output artifact exists.",
            )

        if not self._store.mark_completed(job.job_id, output):
            return self._reread(job)
        return self._completed(job.job_id, output)

    def _fail(self, job: Job, code: str, message: str) -> ProgressSnapshot:
        if self._store.mark_failed(job.job_id, code, message):
            return self._failed(job.job_id, code, message)
        return self._reread(job)

    def _reread(self, job: Job) -> ProgressSnapshot:
        """Report whatever state another actor already persisted."""

        latest = self._store.get_job(job.job_id)
        if latest is None or not latest.is_terminal:
            return self._pending(latest or job)
        return self.poll(latest)

    def _failed(
        self, job_id: str, code: str | None, message: str | None
    ) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=job_id,
            status="failed",
            stage="Failed",
            error_code=code or ErrorCode.INTERNAL_ERROR,
            error_message=message,
        )

    def _completed(self, job_id: str, output: OutputRef | None) -> ProgressSnapshot:
        if output is None:
            return ProgressSnapshot(
                job_id=job_id,
                status="completed",
                percent=100,
                stage="Completed",
                output=OutputView(url=None, size_bytes=None, duration_ms=None),
            )
        url = output.alternate_url
        if output.bucket and output.key:
            try:
                url = self._bounded(
                    self._blobs.presign_get,
                    output.bucket,
                    output.key,
                    expires_in=self._presign_expires,
                )
            except Exception as exc:
                log.warning(
                    "render.progress.presign_failed",
                    job_id=job_id,
                    key=output.key,
                    error=str(exc) or type(exc).__name__,
                )
        return ProgressSnapshot(
            job_id=job_id,
            status="completed",
            percent=100,
            stage="Completed",
            output=OutputView(
                url=url,
                size_bytes=output.size_bytes,
                duration_ms=output.duration_ms,
                content_type=output.content_type,
            ),
        )


__all__ = [
    "DEFAULT_WEIGHTS",
    "MAX_DISPLAY_PERCENT",
    "ProgressAggregator",
    "ProgressWeights",
    "blended_percent",
    "stage_for",
]
