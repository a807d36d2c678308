"""Base interfaces and errors for the render job orchestrator."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, TypedDict, runtime_checkable


class FleetRenderRequest(TypedDict):
    """Payload handed to a compute fleet when a render is started."""

    job_id: str
    composition: Mapping[str, Any]
    credentials: Mapping[str, str]
    shard_size: int
    total_frames: int
    fps: int
    output_bucket: str
    output_key: str


class FleetSubmissionRequired(TypedDict):
    """Required fields returned by a compute fleet after a successful start."""

    render_id: str
    bucket: str


class FleetSubmission(FleetSubmissionRequired, total=False):
    """Fleet start response with optional descriptive metadata."""

    staging_key: str
    message: str


class FleetProgress(TypedDict, total=False):
    """Progress artifact reported by a compute fleet for one render."""

    done: bool
    fatal_error: bool
    error_message: str | None
    frames_rendered: int
    frames_encoded: int
    shards_done: int
    shards_total: int | None
    output_bucket: str | None
    output_key: str | None
    output_size: int | None
    output_url: str | None
    time_to_finish_ms: int | None


class BlobHead(TypedDict):
    """Existence metadata returned by :meth:`BlobStore.head`."""

    size_bytes: int
    content_type: str | None


class RenderOrchestrationError(RuntimeError):
    """Raised when a render orchestration operation cannot proceed."""

    default_code = "INTERNAL_ERROR"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        hint: str | None = None,
        status_code: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.hint = hint
        self.status_code = status_code or self.default_status
        self.context: dict[str, Any] = dict(context or {})


class RenderValidationError(RenderOrchestrationError):
    """Raised when a render request is malformed; no job is ever created."""

    default_code = "VALIDATION_ERROR"
    default_status = 422


class JobNotFoundError(RenderOrchestrationError):
    """Raised when a job does not exist or has expired."""

    default_code = "NOT_FOUND"
    default_status = 404


class JobAlreadyExistsError(RenderOrchestrationError):
    """Raised when an insert collides with an existing ``job_id``."""

    default_code = "JOB_ALREADY_EXISTS"
    default_status = 409


class DuplicateJobError(RenderOrchestrationError):
    """Raised when a live job already holds the idempotency key."""

    default_code = "DUPLICATE_JOB"
    default_status = 409

    def __init__(self, existing_job_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Job '{existing_job_id}' already holds this idempotency key.", **kwargs
        )
        self.existing_job_id = existing_job_id


class StoreUnavailableError(RenderOrchestrationError):
    """Raised when the job table cannot be reached."""

    default_code = "STORE_UNAVAILABLE"
    default_status = 503


class RenderDispatchError(RenderOrchestrationError):
    """Raised when the compute fleet refuses a render submission."""

    default_code = "RENDER_START_FAILED"
    default_status = 502


class RenderDispatchTimeoutError(RenderDispatchError):
    """Raised when a render submission exceeds the dispatch deadline."""

    default_code = "RENDER_START_TIMEOUT"
    default_status = 504


class FleetError(RenderOrchestrationError):
    """Raised by compute fleet adapters when a call fails."""

    default_code = "FLEET_ERROR"
    default_status = 502


class ProgressUnavailableError(FleetError):
    """Raised when a progress artifact exists but cannot be read right now."""

    default_code = "PROGRESS_UNAVAILABLE"
    default_status = 503


class BlobStoreError(RenderOrchestrationError):
    """Raised when a blob store operation fails for a reason other than absence."""

    default_code = "BLOB_STORE_ERROR"
    default_status = 502


class LeaseUnavailableError(RenderOrchestrationError):
    """Raised when the lease table itself cannot be used."""

    default_code = "LEASE_UNAVAILABLE"
    default_status = 503


@runtime_checkable
class ComputeFleet(Protocol):
    """Protocol implemented by compute fleet adapters."""

    def start_render(self, request: FleetRenderRequest) -> FleetSubmission:
        """Start a render and return the fleet's handle."""

    def get_progress(self, render_id: str, bucket: str) -> FleetProgress | None:
        """Return the progress artifact, or ``None`` if it does not exist yet."""


@runtime_checkable
class BlobStore(Protocol):
    """Protocol implemented by blob stores holding render output."""

    def put(
        self, bucket: str, key: str, body: bytes, *, content_type: str | None = None
    ) -> None:
        """Store ``body`` under ``bucket``/``key``."""

    def head(self, bucket: str, key: str) -> BlobHead | None:
        """Return object metadata, or ``None`` if the object does not exist."""

    def copy(
        self,
        source_bucket: str,
        source_key: str,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
    ) -> None:
        """Copy an object between locations."""

    def presign_get(self, bucket: str, key: str, *, expires_in: int) -> str:
        """Return a time-limited download URL."""


@runtime_checkable
class LeaseLock(Protocol):
    """Mutual exclusion lease with expiry."""

    def acquire(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take the lease if free or expired; return whether it was taken."""

    def release(self, name: str, owner: str) -> None:
        """Release the lease if ``owner`` still holds it."""


@runtime_checkable
class AuditLog(Protocol):
    """Append-only audit sink."""

    def write(self, event: str, payload: Mapping[str, Any], *, at: datetime) -> None:
        """Persist one audit record."""


__all__ = [
    "AuditLog",
    "BlobHead",
    "BlobStore",
    "BlobStoreError",
    "ComputeFleet",
    "DuplicateJobError",
    "FleetError",
    "FleetProgress",
    "FleetRenderRequest",
    "FleetSubmission",
    "JobAlreadyExistsError",
    "JobNotFoundError",
    "LeaseLock",
    "LeaseUnavailableError",
    "ProgressUnavailableError",
    "RenderDispatchError",
    "RenderDispatchTimeoutError",
    "RenderOrchestrationError",
    "RenderValidationError",
    "StoreUnavailableError",
]
