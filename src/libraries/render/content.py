"""Helpers for reading scene timing out of a content descriptor."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from .base import RenderValidationError

DEFAULT_FPS = 30
DEFAULT_SCENE_DURATION_MS = 3000
DEFAULT_TOTAL_DURATION_MS = 3000


@dataclass(frozen=True, slots=True)
class ContentTiming:
    """Timing facts derived from a content descriptor."""

    duration_ms: int
    fps: int
    scene_count: int

    @property
    def total_frames(self) -> int:
        return frames_for(self.duration_ms, self.fps)


def frames_for(duration_ms: int, fps: int) -> int:
    return math.ceil(duration_ms / 1000 * fps)


def _positive_int(value: Any, *, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RenderValidationError(f"{label} must be a number.", context={label: value})
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise RenderValidationError(
            f"{label} must be a number.", context={label: value}
        ) from exc
    if number < 0:
        raise RenderValidationError(
            f"{label} cannot be negative.", context={label: number}
        )
    return number


def read_timing(
    descriptor: Mapping[str, Any], *, fps_override: int | None = None
) -> ContentTiming:
    """Compute total duration and frame rate for ``descriptor``.

    An explicit ``total_duration_ms`` wins over the per-scene sum; scenes
    without a duration count as :data:`DEFAULT_SCENE_DURATION_MS`. A descriptor
    with no scenes and no duration falls back to
    :data:`DEFAULT_TOTAL_DURATION_MS` so a plan can always be produced.
    """

    scenes = descriptor.get("scenes") or []
    if not isinstance(scenes, list):
        raise RenderValidationError("'scenes' must be a list of scene objects.")

    fps = fps_override
    if fps is None:
        output = descriptor.get("output") or {}
        if not isinstance(output, Mapping):
            raise RenderValidationError("'output' must be an object.")
        fps = _positive_int(output.get("fps"), label="fps") or DEFAULT_FPS
    if fps <= 0:
        raise RenderValidationError("fps must be positive.", context={"fps": fps})

    total = _positive_int(descriptor.get("total_duration_ms"), label="total_duration_ms")
    if not total:
        total = 0
        for index, scene in enumerate(scenes):
            if not isinstance(scene, Mapping):
                raise RenderValidationError(
                    f"Scene {index} must be an object.", context={"scene": index}
                )
            duration = _positive_int(scene.get("duration_ms"), label="duration_ms")
            total += duration if duration else DEFAULT_SCENE_DURATION_MS
    if total <= 0:
        total = DEFAULT_TOTAL_DURATION_MS

    return ContentTiming(duration_ms=total, fps=fps, scene_count=len(scenes))


__all__ = [
    "ContentTiming",
    "DEFAULT_FPS",
    "DEFAULT_SCENE_DURATION_MS",
    "DEFAULT_TOTAL_DURATION_MS",
    "frames_for",
    "read_timing",
]
