"""In-process lease lock used to serialise reaper sweeps."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog

from .models import utcnow

log = structlog.get_logger(__name__)


@dataclass(slots=True)
class _Lease:
    owner: str
    expires_at: datetime


class InMemoryLeaseLock:
    """Named leases with expiry, safe to share between threads."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utcnow
        self._leases: dict[str, _Lease] = {}
        self._lock = threading.Lock()

    def acquire(self, name: str, owner: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            current = self._leases.get(name)
            if current is not None and current.owner != owner and current.expires_at > now:
                return False
            self._leases[name] = _Lease(owner, now + timedelta(seconds=ttl_seconds))
        log.debug("render.lease.acquired", name=name, owner=owner, ttl=ttl_seconds)
        return True

    def release(self, name: str, owner: str) -> None:
        with self._lock:
            current = self._leases.get(name)
            if current is not None and current.owner == owner:
                del self._leases[name]

    def holder(self, name: str) -> str | None:
        with self._lock:
            current = self._leases.get(name)
            if current is None or current.expires_at <= self._clock():
                return None
            return current.owner


__all__ = ["InMemoryLeaseLock"]
