"""Shard sizing for distributing a render across worker invocations."""

from __future__ import annotations

import math
from dataclasses import dataclass

from .base import RenderValidationError
from .content import DEFAULT_TOTAL_DURATION_MS, frames_for
from .models import ShardPlan

MAX_WORKERS = 200
MIN_SHARD = 60
MAX_SHARD = 1200


@dataclass(frozen=True, slots=True)
class PartitionPlanner:
    """Greedy shard sizing that stays under the fleet's worker ceiling.

    ``shard = clamp(ceil(total_frames / max_workers), min_shard, max_shard)``.
    The heuristic favours staying below ``max_workers`` over minimising the
    number of invocations or wall-clock latency.
    """

    max_workers: int = MAX_WORKERS
    min_shard: int = MIN_SHARD
    max_shard: int = MAX_SHARD

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive.")
        if self.min_shard <= 0 or self.max_shard < self.min_shard:
            raise ValueError("Shard bounds must satisfy 0 < min_shard <= max_shard.")

    @property
    def max_frames(self) -> int:
        return self.max_workers * self.max_shard

    def shard_size(self, total_frames: int) -> int:
        per_worker = math.ceil(max(total_frames, 0) / self.max_workers)
        return min(self.max_shard, max(self.min_shard, per_worker))

    def plan_frames(self, total_frames: int) -> ShardPlan:
        if total_frames <= 0:
            total_frames = frames_for(DEFAULT_TOTAL_DURATION_MS, 30)
        if total_frames > self.max_frames:
            raise RenderValidationError(
                f"{total_frames} frames exceed the fleet ceiling of {self.max_frames}.",
                hint="Shorten the composition or raise the worker ceiling.",
                context={
                    "total_frames": total_frames,
                    "max_workers": self.max_workers,
                    "max_shard": self.max_shard,
                },
            )
        size = self.shard_size(total_frames)
        ranges = tuple(
            (start, min(size, total_frames - start))
            for start in range(0, total_frames, size)
        )
        return ShardPlan(shard_size=size, total_frames=total_frames, ranges=ranges)

    def plan(self, duration_ms: int, fps: int) -> ShardPlan:
        if duration_ms <= 0:
            duration_ms = DEFAULT_TOTAL_DURATION_MS
        if fps <= 0:
            raise RenderValidationError("fps must be positive.", context={"fps": fps})
        return self.plan_frames(frames_for(duration_ms, fps))


__all__ = ["MAX_SHARD", "MAX_WORKERS", "MIN_SHARD", "PartitionPlanner"]
