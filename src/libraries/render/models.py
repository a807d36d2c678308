"""Data model shared by the render job orchestrator components."""

from __future__ import annotations

import secrets
import string
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

DEFAULT_CONTENT_TYPE = "video/mp4"
ERROR_MESSAGE_LIMIT = 2000
PROGRESS_STAGE_LIMIT = 200

SENSITIVE_FIELDS: tuple[str, ...] = ("credentials", "payload")

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.astimezone(timezone.utc).timestamp() * 1000)


def from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_job_id(*, now: datetime | None = None) -> str:
    """Return a fresh opaque job identifier (``ff-<time36>-<random>``)."""

    moment = now or utcnow()
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"ff-{_base36(to_epoch_ms(moment))}-{random_part}"


class JobStatus(str, Enum):
    """Lifecycle states persisted for a job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)
ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.QUEUED, JobStatus.PROCESSING}
)

# Allowed forward moves; a status may also move to itself for progress updates.
_FORWARD: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset(
        {JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_forward_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in _FORWARD[current]


class ErrorCode:
    """Stable machine readable failure codes stored on failed jobs."""

    RENDER_START_FAILED = "RENDER_START_FAILED"
    RENDER_START_TIMEOUT = "RENDER_START_TIMEOUT"
    RENDER_FAILED = "RENDER_FAILED"
    OUTPUT_MISSING = "OUTPUT_MISSING"
    TIMEOUT_STUCK = "TIMEOUT_STUCK"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True, slots=True)
class ExternalHandle:
    """Reference returned by the compute fleet once a render is dispatched."""

    render_id: str
    bucket: str
    output_bucket: str
    output_key: str
    shard_size: int
    shard_count: int
    total_frames: int
    fps: int
    staging_key: str | None = None

    def to_storage(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "ExternalHandle":
        return cls(
            render_id=str(payload["render_id"]),
            bucket=str(payload["bucket"]),
            output_bucket=str(payload["output_bucket"]),
            output_key=str(payload["output_key"]),
            shard_size=int(payload["shard_size"]),
            shard_count=int(payload["shard_count"]),
            total_frames=int(payload["total_frames"]),
            fps=int(payload["fps"]),
            staging_key=payload.get("staging_key") or None,
        )


@dataclass(frozen=True, slots=True)
class OutputRef:
    """Location and metadata of a finished render artifact."""

    bucket: str
    key: str
    size_bytes: int | None
    content_type: str = DEFAULT_CONTENT_TYPE
    duration_ms: int | None = None
    alternate_url: str | None = None

    def to_storage(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "OutputRef":
        size = payload.get("size_bytes")
        duration = payload.get("duration_ms")
        return cls(
            bucket=str(payload["bucket"]),
            key=str(payload["key"]),
            size_bytes=int(size) if size is not None else None,
            content_type=str(payload.get("content_type") or DEFAULT_CONTENT_TYPE),
            duration_ms=int(duration) if duration is not None else None,
            alternate_url=payload.get("alternate_url") or None,
        )


@dataclass(slots=True)
class Job:
    """Durable lifecycle record for one render job."""

    job_id: str
    idempotency_key: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    content_id: str = ""
    project_id: str | None = None
    owner_id: str | None = None
    engine: str = ""
    fps: int = 30
    duration_ms: int = 0
    progress_stage: str = "queued"
    progress_percent: int = 0
    external_handle: ExternalHandle | None = None
    output_ref: OutputRef | None = None
    error_code: str | None = None
    error_message: str | None = None
    credentials: dict[str, str] = field(default_factory=dict)
    payload: dict[str, Any] | None = None

    @classmethod
    def new_queued(
        cls,
        *,
        idempotency_key: str,
        retention: timedelta | None = None,
        now: datetime | None = None,
        job_id: str | None = None,
        **attributes: Any,
    ) -> "Job":
        moment = now or utcnow()
        return cls(
            job_id=job_id or generate_job_id(now=moment),
            idempotency_key=idempotency_key,
            status=JobStatus.QUEUED,
            created_at=moment,
            updated_at=moment,
            expires_at=moment + retention if retention else None,
            **attributes,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_expired(self, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def copy(self) -> "Job":
        return replace(
            self,
            credentials=dict(self.credentials),
            payload=dict(self.payload) if self.payload is not None else None,
        )

    def public_view(self) -> dict[str, Any]:
        """Return a serialisable view that never carries sensitive inputs."""

        data = self.to_storage()
        for name in SENSITIVE_FIELDS:
            data.pop(name, None)
        return data

    def to_storage(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "created_at": to_epoch_ms(self.created_at),
            "updated_at": to_epoch_ms(self.updated_at),
            "ttl": (
                int(self.expires_at.timestamp()) if self.expires_at is not None else None
            ),
            "content_id": self.content_id,
            "project_id": self.project_id,
            "owner_id": self.owner_id,
            "engine": self.engine,
            "fps": self.fps,
            "duration_ms": self.duration_ms,
            "progress_stage": self.progress_stage,
            "progress_percent": self.progress_percent,
            "external_handle": (
                self.external_handle.to_storage() if self.external_handle else None
            ),
            "output_ref": self.output_ref.to_storage() if self.output_ref else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "credentials": dict(self.credentials),
            "payload": self.payload,
        }

    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "Job":
        ttl = payload.get("ttl")
        handle = payload.get("external_handle")
        output = payload.get("output_ref")
        return cls(
            job_id=str(payload["job_id"]),
            idempotency_key=str(payload["idempotency_key"]),
            status=JobStatus(str(payload["status"])),
            created_at=from_epoch_ms(payload["created_at"]),
            updated_at=from_epoch_ms(payload["updated_at"]),
            expires_at=(
                datetime.fromtimestamp(int(ttl), tz=timezone.utc)
                if ttl is not None
                else None
            ),
            content_id=str(payload.get("content_id") or ""),
            project_id=payload.get("project_id"),
            owner_id=payload.get("owner_id"),
            engine=str(payload.get("engine") or ""),
            fps=int(payload.get("fps") or 30),
            duration_ms=int(payload.get("duration_ms") or 0),
            progress_stage=str(payload.get("progress_stage") or ""),
            progress_percent=int(payload.get("progress_percent") or 0),
            external_handle=ExternalHandle.from_storage(handle) if handle else None,
            output_ref=OutputRef.from_storage(output) if output else None,
            error_code=payload.get("error_code") or None,
            error_message=payload.get("error_message") or None,
            credentials=dict(payload.get("credentials") or {}),
            payload=payload.get("payload") or None,
        )


def terminal_wipe() -> dict[str, Any]:
    """Field set erasing sensitive inputs; merged into every terminal write."""

    return {"credentials": {}, "payload": None}


@dataclass(frozen=True, slots=True)
class ShardPlan:
    """Frame ranges assigned to individual worker invocations."""

    shard_size: int
    total_frames: int
    ranges: tuple[tuple[int, int], ...]

    @property
    def shard_count(self) -> int:
        return len(self.ranges)


@dataclass(frozen=True, slots=True)
class OutputView:
    """Client-facing description of a finished artifact."""

    url: str | None
    size_bytes: int | None
    duration_ms: int | None
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Transient, re-derived view of a job's progress."""

    job_id: str
    status: str
    percent: int = 0
    stage: str = "Queued"
    frames_rendered: int = 0
    frames_encoded: int = 0
    shards_done: int = 0
    shards_total: int = 0
    output: OutputView | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_response(self) -> dict[str, Any]:
        """Render the snapshot in the client status shape."""

        if self.status == "completed" and self.output is not None:
            return {
                "job_id": self.job_id,
                "status": "completed",
                "output": {
                    "url": self.output.url,
                    "size_bytes": self.output.size_bytes,
                    "duration_ms": self.output.duration_ms,
                },
            }
        if self.status == "failed":
            return {
                "job_id": self.job_id,
                "status": "failed",
                "error": {"code": self.error_code, "message": self.error_message},
            }
        if self.status == "rendering":
            return {
                "job_id": self.job_id,
                "status": "rendering",
                "progress": {
                    "percent": self.percent,
                    "stage": self.stage,
                    "frames_rendered": self.frames_rendered,
                    "frames_encoded": self.frames_encoded,
                    "shards_done": self.shards_done,
                    "shards_total": self.shards_total,
                },
            }
        return {"job_id": self.job_id, "status": "queued", "progress": 0}


@dataclass(frozen=True, slots=True)
class SweepResult:
    """Summary of one stuck-job sweep."""

    checked: int
    marked_stuck: int
    skipped: int
    timestamp: datetime
    lock_acquired: bool = True
    lock_free: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "marked_stuck": self.marked_stuck,
            "skipped": self.skipped,
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat(),
        }


__all__ = [
    "ACTIVE_STATUSES",
    "DEFAULT_CONTENT_TYPE",
    "ERROR_MESSAGE_LIMIT",
    "ErrorCode",
    "ExternalHandle",
    "Job",
    "JobStatus",
    "OutputRef",
    "OutputView",
    "PROGRESS_STAGE_LIMIT",
    "ProgressSnapshot",
    "SENSITIVE_FIELDS",
    "ShardPlan",
    "SweepResult",
    "TERMINAL_STATUSES",
    "from_epoch_ms",
    "generate_job_id",
    "is_forward_transition",
    "terminal_wipe",
    "to_epoch_ms",
    "utcnow",
]
