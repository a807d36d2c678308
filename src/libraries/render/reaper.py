"""Periodic sweep failing jobs whose progress stopped advancing."""

from __future__ import annotations

import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from .base import AuditLog, LeaseLock
from .job_store import JobStore
from .models import ACTIVE_STATUSES, ErrorCode, Job, SweepResult, utcnow

log = structlog.get_logger(__name__)

LEASE_NAME = "reaper:stuck-jobs"
AUDIT_EVENT = "reaper.sweep"
DEFAULT_STUCK_MINUTES = 30
DEFAULT_BATCH_SIZE = 200
DEFAULT_LEASE_TTL = 300


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def stuck_message(job: Job, cutoff: datetime, minutes: int) -> str:
    return (
        f"Job stuck in '{job.status.value}' since {job.updated_at.isoformat()}; "
        f"no progress within {minutes} minutes (deadline {cutoff.isoformat()})."
    )


class StuckJobReaper:
    """Fail ``queued``/``processing`` jobs that have not moved for too long.

    At most one sweep runs at a time across the deployment thanks to a lease.
    If the lease table itself cannot be used the sweep proceeds without it:
    every transition is conditional on the observed ``updated_at`` so
    concurrent sweeps cannot double-fail or clobber a job that just advanced.
    """

    def __init__(
        self,
        store: JobStore,
        lease: LeaseLock,
        audit: AuditLog,
        *,
        stuck_minutes: int = DEFAULT_STUCK_MINUTES,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_ttl: int = DEFAULT_LEASE_TTL,
        owner: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if stuck_minutes <= 0:
            raise ValueError("stuck_minutes must be positive.")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        self._store = store
        self._lease = lease
        self._audit = audit
        self._stuck_minutes = stuck_minutes
        self._batch_size = batch_size
        self._lease_ttl = lease_ttl
        self._owner = owner or default_owner()
        self._clock = clock or utcnow

    @property
    def stuck_minutes(self) -> int:
        return self._stuck_minutes

    def _acquire(self) -> tuple[bool, bool]:
        """Return ``(may_proceed, holds_lease)``."""

        try:
            acquired = self._lease.acquire(LEASE_NAME, self._owner, self._lease_ttl)
        except Exception as exc:
            log.warning(
                "render.reaper.lease_unavailable",
                owner=self._owner,
                error=str(exc) or type(exc).__name__,
            )
            return True, False
        return acquired, acquired

    def sweep(
        self, now: datetime | None = None, *, stuck_minutes: int | None = None
    ) -> SweepResult:
        moment = now or self._clock()
        minutes = stuck_minutes or self._stuck_minutes
        if minutes <= 0:
            raise ValueError("stuck_minutes must be positive.")
        cutoff = moment - timedelta(minutes=minutes)

        may_proceed, holds_lease = self._acquire()
        checked = marked = skipped = 0
        error: str | None = None
        try:
            if not may_proceed:
                log.info("render.reaper.sweep.lock_held", owner=self._owner)
            else:
                candidates = self._store.find_stale(
                    ACTIVE_STATUSES, cutoff, limit=self._batch_size
                )
                for job in candidates:
                    checked += 1
                    if self._reap(job, cutoff, minutes):
                        marked += 1
                    else:
                        skipped += 1
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            raise
        finally:
            result = SweepResult(
                checked=checked,
                marked_stuck=marked,
                skipped=skipped,
                timestamp=moment,
                lock_acquired=holds_lease,
                lock_free=may_proceed and not holds_lease,
            )
            self._write_audit(result, cutoff, minutes, error)
            if holds_lease:
                self._release()

        log.info(
            "render.reaper.sweep.complete",
            checked=checked,
            marked_stuck=marked,
            skipped=skipped,
            lock_acquired=result.lock_acquired,
            lock_free=result.lock_free,
        )
        return result

    def _reap(self, job: Job, cutoff: datetime, minutes: int) -> bool:
        try:
            applied = self._store.mark_failed(
                job.job_id,
                ErrorCode.TIMEOUT_STUCK,
                stuck_message(job, cutoff, minutes),
                stage="stuck",
                if_updated_at=job.updated_at,
            )
        except Exception as exc:
            log.warning(
                "render.reaper.transition_error",
                job_id=job.job_id,
                error=str(exc) or type(exc).__name__,
            )
            return False
        if applied:
            log.warning(
                "render.reaper.marked_stuck",
                job_id=job.job_id,
                previous_status=job.status.value,
            )
        return applied

    def _write_audit(
        self, result: SweepResult, cutoff: datetime, minutes: int, error: str | None
    ) -> None:
        payload: dict[str, Any] = {
            **result.to_dict(),
            "lock_acquired": result.lock_acquired,
            "lock_free": result.lock_free,
            "stuck_minutes": minutes,
            "cutoff": cutoff.isoformat(),
            "owner": self._owner,
        }
        if error is not None:
            payload["error"] = error
        try:
            self._audit.write(AUDIT_EVENT, payload, at=result.timestamp)
        except Exception as exc:
            log.warning("render.reaper.audit_failed", error=str(exc) or type(exc).__name__)

    def _release(self) -> None:
        try:
            self._lease.release(LEASE_NAME, self._owner)
        except Exception as exc:
            log.warning("render.reaper.release_failed", error=str(exc) or type(exc).__name__)


__all__ = [
    "AUDIT_EVENT",
    "DEFAULT_STUCK_MINUTES",
    "LEASE_NAME",
    "StuckJobReaper",
    "stuck_message",
]
