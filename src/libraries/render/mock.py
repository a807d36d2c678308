"""In-memory compute fleet and blob store for local runs and tests."""

from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

import structlog

from .base import (
    BlobHead,
    BlobStoreError,
    FleetError,
    FleetProgress,
    FleetRenderRequest,
    FleetSubmission,
)

log = structlog.get_logger(__name__)

MOCK_BUCKET = "mock-renders"


@dataclass(slots=True)
class _Blob:
    body: bytes
    content_type: str | None


class InMemoryBlobStore:
    """Dictionary backed blob store mirroring the S3 adapter's behaviour."""

    def __init__(self, *, base_url: str = "https://blobs.invalid") -> None:
        self._objects: dict[tuple[str, str], _Blob] = {}
        self._lock = threading.Lock()
        self._base_url = base_url.rstrip("/")
        self.copies: list[tuple[str, str, str, str]] = []

    def put(
        self, bucket: str, key: str, body: bytes, *, content_type: str | None = None
    ) -> None:
        with self._lock:
            self._objects[(bucket, key)] = _Blob(bytes(body), content_type)

    def head(self, bucket: str, key: str) -> BlobHead | None:
        with self._lock:
            blob = self._objects.get((bucket, key))
        if blob is None:
            return None
        return BlobHead(size_bytes=len(blob.body), content_type=blob.content_type)

    def copy(
        self,
        source_bucket: str,
        source_key: str,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
    ) -> None:
        with self._lock:
            blob = self._objects.get((source_bucket, source_key))
            if blob is None:
                raise BlobStoreError(
                    f"Source object {source_bucket}/{source_key} does not exist.",
                    context={"bucket": source_bucket, "key": source_key},
                )
            self._objects[(bucket, key)] = _Blob(
                blob.body, content_type or blob.content_type
            )
            self.copies.append((source_bucket, source_key, bucket, key))

    def presign_get(self, bucket: str, key: str, *, expires_in: int) -> str:
        return f"{self._base_url}/{bucket}/{key}?expires={expires_in}"

    def delete(self, bucket: str, key: str) -> None:
        with self._lock:
            self._objects.pop((bucket, key), None)


class MockComputeFleet:
    """Scriptable compute fleet.

    Tests drive renders explicitly through :meth:`report`, :meth:`complete`
    and :meth:`fail`. With ``steps`` set, every progress read advances the
    render by one step and the final step writes the output to ``blobs``,
    which is handy for local demos.
    """

    def __init__(
        self,
        *,
        blobs: InMemoryBlobStore | None = None,
        bucket: str = MOCK_BUCKET,
        steps: int = 0,
        start_error: Exception | None = None,
        start_delay: float = 0.0,
        progress_error: Exception | None = None,
    ) -> None:
        self.blobs = blobs or InMemoryBlobStore()
        self.bucket = bucket
        self.steps = steps
        self.start_error = start_error
        self.start_delay = start_delay
        self.progress_error = progress_error
        self.requests: list[FleetRenderRequest] = []
        self._progress: dict[str, FleetProgress] = {}
        self._totals: dict[str, tuple[int, int]] = {}
        self._ticks: dict[str, int] = {}
        self._lock = threading.Lock()

    def start_render(self, request: FleetRenderRequest) -> FleetSubmission:
        if self.start_delay:
            time.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        render_id = f"mock-{uuid.uuid4().hex[:12]}"
        shards = math.ceil(request["total_frames"] / request["shard_size"])
        with self._lock:
            self.requests.append(request)
            self._totals[render_id] = (request["total_frames"], shards)
        log.info(
            "render.mock.start_render",
            job_id=request["job_id"],
            render_id=render_id,
            total_frames=request["total_frames"],
        )
        return FleetSubmission(
            render_id=render_id,
            bucket=self.bucket,
            staging_key=staging_key(render_id),
        )

    def get_progress(self, render_id: str, bucket: str) -> FleetProgress | None:
        if self.progress_error is not None:
            raise self.progress_error
        if self.steps and render_id in self._totals:
            self._advance(render_id)
        with self._lock:
            progress = self._progress.get(render_id)
            return FleetProgress(**progress) if progress is not None else None

    def report(self, render_id: str, **fields: Any) -> None:
        with self._lock:
            if render_id not in self._totals:
                raise FleetError(f"Unknown render '{render_id}'.")
            current = self._progress.setdefault(render_id, FleetProgress())
            current.update(fields)  # type: ignore[typeddict-item]

    def complete(
        self,
        render_id: str,
        *,
        body: bytes = b"\x00" * 1024,
        write_output: bool = True,
        **fields: Any,
    ) -> None:
        frames, shards = self._totals[render_id]
        key = staging_key(render_id)
        if write_output:
            self.blobs.put(self.bucket, key, body, content_type="video/mp4")
        self.report(
            render_id,
            done=True,
            frames_rendered=frames,
            frames_encoded=frames,
            shards_done=shards,
            shards_total=shards,
            output_bucket=self.bucket,
            output_key=key,
            output_size=len(body),
            **fields,
        )

    def fail(self, render_id: str, message: str = "Render failed") -> None:
        self.report(render_id, fatal_error=True, error_message=message)

    def _advance(self, render_id: str) -> None:
        frames, shards = self._totals[render_id]
        with self._lock:
            current = self._progress.get(render_id) or FleetProgress()
            if current.get("done") or current.get("fatal_error"):
                return
            step = self._ticks.get(render_id, 0) + 1
            self._ticks[render_id] = step
        if step >= self.steps:
            self.complete(render_id)
            return
        fraction = step / self.steps
        self.report(
            render_id,
            frames_rendered=min(frames, round(frames * fraction * 2)),
            frames_encoded=round(frames * fraction),
            shards_done=round(shards * fraction),
            shards_total=shards,
        )


def staging_key(render_id: str) -> str:
    return f"renders/{render_id}/out.mp4"


__all__ = ["InMemoryBlobStore", "MOCK_BUCKET", "MockComputeFleet", "staging_key"]
