"""Shared pytest fixtures for the FrameFleet render orchestrator tests."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
import structlog

from libraries.render.audit import InMemoryAuditLog
from libraries.render.dispatcher import Dispatcher
from libraries.render.job_store import InMemoryJobStore
from libraries.render.lease import InMemoryLeaseLock
from libraries.render.mock import InMemoryBlobStore, MockComputeFleet
from libraries.render.progress import ProgressAggregator
from libraries.render.reaper import StuckJobReaper
from libraries.render.service import RenderOrchestrator

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OUTPUT_BUCKET = "framefleet-test-renders"


class FixedClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Drop logging configuration bound to per-test output streams."""

    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(clock: FixedClock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def fleet(blobs: InMemoryBlobStore) -> MockComputeFleet:
    return MockComputeFleet(blobs=blobs)


@pytest.fixture
def lease(clock: FixedClock) -> InMemoryLeaseLock:
    return InMemoryLeaseLock(clock=clock)


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def descriptor() -> dict[str, Any]:
    """Two twelve second scenes at 30fps: 720 frames in total."""

    return {
        "scenes": [
            {"id": "intro", "duration_ms": 12000},
            {"id": "outro", "duration_ms": 12000},
        ],
        "output": {"fps": 30},
    }


@pytest.fixture
def build_orchestrator(
    store: InMemoryJobStore,
    blobs: InMemoryBlobStore,
    fleet: MockComputeFleet,
    lease: InMemoryLeaseLock,
    audit: InMemoryAuditLog,
    clock: FixedClock,
) -> Callable[[], RenderOrchestrator]:
    """Return a factory of orchestrators sharing one set of in-memory backends."""

    def _build() -> RenderOrchestrator:
        return RenderOrchestrator(
            store,
            Dispatcher(fleet, store, output_bucket=OUTPUT_BUCKET, timeout=5.0),
            ProgressAggregator(fleet, blobs, store, io_timeout=5.0),
            StuckJobReaper(store, lease, audit, owner="reaper-test", clock=clock),
            clock=clock,
        )

    return _build


@pytest.fixture
def orchestrator(
    build_orchestrator: Callable[[], RenderOrchestrator],
) -> Iterator[RenderOrchestrator]:
    service = build_orchestrator()
    yield service
    service.close()
