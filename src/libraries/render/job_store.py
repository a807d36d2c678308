"""Durable storage for render job records with conditional transitions."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Iterable, Mapping

import structlog

from .base import DuplicateJobError, JobAlreadyExistsError
from .models import (
    ACTIVE_STATUSES,
    ERROR_MESSAGE_LIMIT,
    PROGRESS_STAGE_LIMIT,
    ExternalHandle,
    Job,
    JobStatus,
    OutputRef,
    is_forward_transition,
    terminal_wipe,
    utcnow,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_IMMUTABLE_FIELDS = frozenset(
    {"job_id", "idempotency_key", "status", "created_at", "updated_at"}
)
MUTABLE_FIELDS: frozenset[str] = frozenset(
    entry.name for entry in fields(Job) if entry.name not in _IMMUTABLE_FIELDS
)


def _serialise_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def prepare_transition_fields(
    from_statuses: Collection[JobStatus],
    to: JobStatus,
    values: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Validate a transition request and return the full field set to write.

    Terminal targets always carry the sensitive-field wipe so that erasure is
    part of the same atomic write as the status change.
    """

    if not from_statuses:
        raise ValueError("A transition needs at least one source status.")
    for source in from_statuses:
        if not is_forward_transition(source, to):
            raise ValueError(
                f"Transition {source.value} -> {to.value} would move a job backwards."
            )
    prepared = dict(values or {})
    unknown = set(prepared) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be written by a transition: {sorted(unknown)}")
    if "error_message" in prepared and prepared["error_message"] is not None:
        prepared["error_message"] = str(prepared["error_message"])[:ERROR_MESSAGE_LIMIT]
    if "progress_stage" in prepared and prepared["progress_stage"] is not None:
        prepared["progress_stage"] = str(prepared["progress_stage"])[
            :PROGRESS_STAGE_LIMIT
        ]
    if to.is_terminal:
        prepared.update(terminal_wipe())
    return prepared


@dataclass(slots=True)
class JobStoreStats:
    """Counters describing store activity for health endpoints."""

    created: int = 0
    duplicates_rejected: int = 0
    transitions_applied: int = 0
    transitions_skipped: int = 0
    last_transition_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["last_transition_at"] = _serialise_datetime(self.last_transition_at)
        return data


class JobStore(ABC):
    """Conditional-write contract shared by every job table implementation.

    Every mutation is a compare-and-swap on the job status. A transition whose
    precondition does not hold is reported as ``False``; callers treat that as
    "another actor already advanced the job", never as a failure.
    """

    def __init__(self) -> None:
        self._stats = JobStoreStats()

    @property
    def stats(self) -> JobStoreStats:
        return self._stats

    @abstractmethod
    def create_queued(self, job: Job) -> None:
        """Insert a new ``queued`` job; never overwrites.

        Raises :class:`JobAlreadyExistsError` for a ``job_id`` collision and
        :class:`DuplicateJobError` when a non-failed job holds the key.
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Job | None:
        """Return the job, or ``None`` if it is unknown or expired."""

    @abstractmethod
    def transition(
        self,
        job_id: str,
        from_statuses: Collection[JobStatus],
        to: JobStatus,
        values: Mapping[str, Any] | None = None,
        *,
        if_updated_at: datetime | None = None,
    ) -> bool:
        """Apply ``values`` and move to ``to`` if the status is in ``from_statuses``."""

    @abstractmethod
    def record_progress(self, job_id: str, percent: int, stage: str) -> bool:
        """Raise the persisted progress high-water mark of an active job."""

    @abstractmethod
    def find_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        """Return the most recent job created for ``idempotency_key``."""

    @abstractmethod
    def find_stale(
        self,
        statuses: Collection[JobStatus],
        older_than: datetime,
        *,
        limit: int,
    ) -> list[Job]:
        """Return jobs in ``statuses`` not updated since ``older_than``, stalest first."""

    def mark_processing(
        self, job_id: str, handle: ExternalHandle, *, stage: str = "dispatched"
    ) -> bool:
        return self.transition(
            job_id,
            {JobStatus.QUEUED},
            JobStatus.PROCESSING,
            {"external_handle": handle, "progress_stage": stage},
        )

    def mark_completed(self, job_id: str, output: OutputRef) -> bool:
        applied = self.transition(
            job_id,
            ACTIVE_STATUSES,
            JobStatus.COMPLETED,
            {
                "output_ref": output,
                "progress_stage": "completed",
                "progress_percent": 100,
            },
        )
        if applied:
            logger.info(
                "render.store.completed",
                job_id=job_id,
                key=output.key,
                size_bytes=output.size_bytes,
            )
        return applied

    def mark_failed(
        self,
        job_id: str,
        code: str,
        message: str,
        *,
        stage: str = "failed",
        if_updated_at: datetime | None = None,
    ) -> bool:
        applied = self.transition(
            job_id,
            ACTIVE_STATUSES,
            JobStatus.FAILED,
            {"error_code": code, "error_message": message, "progress_stage": stage},
            if_updated_at=if_updated_at,
        )
        if applied:
            logger.info("render.store.failed", job_id=job_id, error_code=code)
        else:
            logger.info("render.store.failed.skipped", job_id=job_id, error_code=code)
        return applied

    def _record_transition(self, applied: bool, moment: datetime) -> None:
        if applied:
            self._stats.transitions_applied += 1
            self._stats.last_transition_at = moment
        else:
            self._stats.transitions_skipped += 1


class InMemoryJobStore(JobStore):
    """Thread-safe in-process job table honouring the conditional contract.

    The internal lock models the atomicity a transactional key-value store
    provides for a single item; it is never held across external calls.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        super().__init__()
        self._clock = clock or utcnow
        self._jobs: dict[str, Job] = {}
        self._idempotency: dict[str, str] = {}
        self._lock = threading.Lock()

    def _now(self, previous: datetime | None = None) -> datetime:
        moment = self._clock()
        if previous is not None and moment < previous:
            return previous
        return moment

    def _live(self, job_id: str, moment: datetime) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.is_expired(now=moment):
            return None
        return job

    def create_queued(self, job: Job) -> None:
        if job.status is not JobStatus.QUEUED:
            raise ValueError("Only queued jobs can be created.")
        with self._lock:
            moment = self._clock()
            if job.job_id in self._jobs:
                raise JobAlreadyExistsError(
                    f"Job '{job.job_id}' already exists.",
                    context={"job_id": job.job_id},
                )
            holder_id = self._idempotency.get(job.idempotency_key)
            if holder_id is not None:
                holder = self._live(holder_id, moment)
                if holder is not None and holder.status is not JobStatus.FAILED:
                    self._stats.duplicates_rejected += 1
                    raise DuplicateJobError(holder_id, context={"job_id": holder_id})
            self._jobs[job.job_id] = job.copy()
            self._idempotency[job.idempotency_key] = job.job_id
            self._stats.created += 1
        logger.info("render.store.created", job_id=job.job_id)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._live(job_id, self._clock())
            return job.copy() if job is not None else None

    def transition(
        self,
        job_id: str,
        from_statuses: Collection[JobStatus],
        to: JobStatus,
        values: Mapping[str, Any] | None = None,
        *,
        if_updated_at: datetime | None = None,
    ) -> bool:
        prepared = prepare_transition_fields(from_statuses, to, values)
        with self._lock:
            current = self._jobs.get(job_id)
            applied = (
                current is not None
                and current.status in from_statuses
                and (if_updated_at is None or current.updated_at == if_updated_at)
            )
            moment = self._now(current.updated_at if current is not None else None)
            if applied:
                assert current is not None
                self._jobs[job_id] = replace(
                    current, status=to, updated_at=moment, **prepared
                )
            self._record_transition(applied, moment)
        return applied

    def record_progress(self, job_id: str, percent: int, stage: str) -> bool:
        with self._lock:
            current = self._jobs.get(job_id)
            if (
                current is None
                or current.status not in ACTIVE_STATUSES
                or percent <= current.progress_percent
            ):
                return False
            moment = self._now(current.updated_at)
            self._jobs[job_id] = replace(
                current,
                progress_percent=percent,
                progress_stage=stage[:PROGRESS_STAGE_LIMIT],
                updated_at=moment,
            )
            self._record_transition(True, moment)
        return True

    def find_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        with self._lock:
            holder_id = self._idempotency.get(idempotency_key)
            if holder_id is None:
                return None
            job = self._live(holder_id, self._clock())
            return job.copy() if job is not None else None

    def find_stale(
        self,
        statuses: Collection[JobStatus],
        older_than: datetime,
        *,
        limit: int,
    ) -> list[Job]:
        if limit <= 0:
            return []
        with self._lock:
            moment = self._clock()
            matches = [
                job.copy()
                for job in self._jobs.values()
                if job.status in statuses
                and job.updated_at < older_than
                and not job.is_expired(now=moment)
            ]
        matches.sort(key=lambda job: job.updated_at)
        return matches[:limit]

    def purge_expired(self) -> int:
        """Drop expired records; returns the number removed."""

        with self._lock:
            moment = self._clock()
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_expired(now=moment)
            ]
            for job_id in expired:
                job = self._jobs.pop(job_id)
                if self._idempotency.get(job.idempotency_key) == job_id:
                    del self._idempotency[job.idempotency_key]
        if expired:
            logger.info("render.store.purged", count=len(expired))
        return len(expired)

    def all_jobs(self) -> Iterable[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values()]


__all__ = [
    "InMemoryJobStore",
    "JobStore",
    "JobStoreStats",
    "MUTABLE_FIELDS",
    "prepare_transition_fields",
]
