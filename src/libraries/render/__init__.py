"""Render job orchestration: planning, dispatch, progress and recovery."""

from .base import (
    DuplicateJobError,
    JobNotFoundError,
    RenderDispatchError,
    RenderDispatchTimeoutError,
    RenderOrchestrationError,
    RenderValidationError,
)
from .job_store import InMemoryJobStore, JobStore
from .models import ErrorCode, Job, JobStatus, ProgressSnapshot, SweepResult
from .planner import PartitionPlanner
from .progress import ProgressAggregator, ProgressWeights
from .reaper import StuckJobReaper
from .requests import RenderStartRequest
from .service import RenderOrchestrator, StartResult

__all__ = [
    "DuplicateJobError",
    "ErrorCode",
    "InMemoryJobStore",
    "Job",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "PartitionPlanner",
    "ProgressAggregator",
    "ProgressSnapshot",
    "ProgressWeights",
    "RenderDispatchError",
    "RenderDispatchTimeoutError",
    "RenderOrchestrationError",
    "RenderOrchestrator",
    "RenderStartRequest",
    "RenderValidationError",
    "StartResult",
    "StuckJobReaper",
    "SweepResult",
]
