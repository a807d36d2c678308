"""Typed orchestrator settings and backend wiring."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from typing import Any, Literal, Mapping, get_args

import structlog

from apps.framefleet.config import ProfileContext
from apps.framefleet.utils.errors import FrameFleetConfigError
from libraries.render.audit import InMemoryAuditLog
from libraries.render.dispatcher import Dispatcher
from libraries.render.job_store import InMemoryJobStore
from libraries.render.lease import InMemoryLeaseLock
from libraries.render.mock import InMemoryBlobStore, MockComputeFleet
from libraries.render.planner import PartitionPlanner
from libraries.render.progress import ProgressAggregator, ProgressWeights
from libraries.render.reaper import StuckJobReaper
from libraries.render.service import RenderOrchestrator

log = structlog.get_logger(__name__)

ENV_PREFIX = "FRAMEFLEET_"

Backend = Literal["memory", "aws"]


@dataclass(frozen=True)
class OrchestratorSettings:
    """Resolved settings for one orchestrator deployment."""

    backend: Backend = "memory"
    region: str | None = None
    jobs_table: str = "framefleet-jobs"
    leases_table: str = "framefleet-leases"
    audit_table: str = "framefleet-audit"
    output_bucket: str = "framefleet-renders"
    output_prefix: str = "renders"
    function_name: str | None = None
    serve_url: str | None = None
    composition: str = "FrameFleetVideo"
    renderer_version: str | None = None
    render_timeout_ms: int = 120_000
    dispatch_timeout: float = 90.0
    io_timeout: float = 30.0
    presign_expires: int = 86_400
    retention_hours: float = 24.0
    stuck_minutes: int = 30
    sweep_batch: int = 200
    sweep_interval: float = 300.0
    lease_ttl: int = 300
    max_workers: int = 200
    min_shard: int = 60
    max_shard: int = 1200
    weight_render: float = 0.6
    weight_encode: float = 0.3
    weight_combine: float = 0.1
    mock_steps: int = 4
    extras: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    @property
    def weights(self) -> ProgressWeights:
        return ProgressWeights(
            render=self.weight_render,
            encode=self.weight_encode,
            combine=self.weight_combine,
        )

    @classmethod
    def from_profile(
        cls,
        context: ProfileContext | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "OrchestratorSettings":
        """Build settings from a profile, then apply ``FRAMEFLEET_*`` overrides.

        Profile values with the wrong type raise
        :class:`FrameFleetConfigError`; invalid environment values are logged
        and ignored.
        """

        data = dict(context.data) if context is not None else {}
        known = {entry.name: entry for entry in fields(cls) if entry.name != "extras"}
        values: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, raw in data.items():
            entry = known.get(key)
            if entry is None:
                extras[key] = raw
                continue
            try:
                values[key] = _coerce(key, raw)
            except (TypeError, ValueError) as exc:
                raise FrameFleetConfigError(
                    f"Invalid value for '{key}' in profile "
                    f"'{context.name if context else 'default'}': {exc}"
                ) from exc

        settings = cls(**values, extras=extras)
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in known:
            env_name = f"{ENV_PREFIX}{name.upper()}"
            raw_env = env.get(env_name)
            if raw_env is None or raw_env == "":
                continue
            try:
                overrides[name] = _coerce(name, raw_env)
            except (TypeError, ValueError):
                log.warning("framefleet.settings.env_invalid", env=env_name, value=raw_env)
        if overrides:
            settings = replace(settings, **overrides)
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.backend not in get_args(Backend):
            raise FrameFleetConfigError(
                f"Unknown backend '{self.backend}'. Choose one of: memory, aws."
            )
        if self.dispatch_timeout <= 0 or self.io_timeout <= 0:
            raise FrameFleetConfigError("Timeouts must be positive.")
        if self.stuck_minutes <= 0:
            raise FrameFleetConfigError("stuck_minutes must be positive.")
        if self.retention_hours <= 0:
            raise FrameFleetConfigError("retention_hours must be positive.")
        if self.max_workers <= 0 or not 0 < self.min_shard <= self.max_shard:
            raise FrameFleetConfigError(
                "Shard settings must satisfy max_workers > 0 and 0 < min_shard <= max_shard."
            )
        if min(self.weight_render, self.weight_encode, self.weight_combine) < 0:
            raise FrameFleetConfigError("Progress weights cannot be negative.")
        if self.backend == "aws" and not (self.function_name and self.serve_url):
            raise FrameFleetConfigError(
                "The aws backend needs 'function_name' and 'serve_url'."
            )


_INT_FIELDS = {
    "render_timeout_ms",
    "presign_expires",
    "stuck_minutes",
    "sweep_batch",
    "lease_ttl",
    "max_workers",
    "min_shard",
    "max_shard",
    "mock_steps",
}
_FLOAT_FIELDS = {
    "dispatch_timeout",
    "io_timeout",
    "retention_hours",
    "sweep_interval",
    "weight_render",
    "weight_encode",
    "weight_combine",
}


def _coerce(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        raise TypeError(f"expected a number or string, got {value!r}")
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if not isinstance(value, (str, int, float)):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    text = str(value).strip()
    if name == "backend":
        return text.lower()
    return text or None


def build_orchestrator(settings: OrchestratorSettings) -> RenderOrchestrator:
    """Wire a :class:`RenderOrchestrator` for the configured backend."""

    if settings.backend == "aws":
        from libraries.aws.blob_store import S3BlobStore
        from libraries.aws.compute_fleet import LambdaComputeFleet
        from libraries.aws.dynamodb import (
            DynamoDBAuditLog,
            DynamoDBJobStore,
            DynamoDBLeaseLock,
        )

        assert settings.function_name and settings.serve_url
        store = DynamoDBJobStore(settings.jobs_table, region=settings.region)
        blobs = S3BlobStore(region=settings.region)
        fleet = LambdaComputeFleet(
            function_name=settings.function_name,
            serve_url=settings.serve_url,
            bucket=settings.output_bucket,
            composition=settings.composition,
            renderer_version=settings.renderer_version,
            render_timeout_ms=settings.render_timeout_ms,
            region=settings.region,
            invoke_timeout=settings.dispatch_timeout,
        )
        lease = DynamoDBLeaseLock(settings.leases_table, region=settings.region)
        audit = DynamoDBAuditLog(settings.audit_table, region=settings.region)
    else:
        store = InMemoryJobStore()
        blobs = InMemoryBlobStore()
        fleet = MockComputeFleet(blobs=blobs, steps=settings.mock_steps)
        lease = InMemoryLeaseLock()
        audit = InMemoryAuditLog()

    log.info("framefleet.orchestrator.build", backend=settings.backend)
    return RenderOrchestrator(
        store,
        Dispatcher(
            fleet,
            store,
            output_bucket=settings.output_bucket,
            output_prefix=settings.output_prefix,
            timeout=settings.dispatch_timeout,
        ),
        ProgressAggregator(
            fleet,
            blobs,
            store,
            weights=settings.weights,
            presign_expires=settings.presign_expires,
            io_timeout=settings.io_timeout,
        ),
        StuckJobReaper(
            store,
            lease,
            audit,
            stuck_minutes=settings.stuck_minutes,
            batch_size=settings.sweep_batch,
            lease_ttl=settings.lease_ttl,
        ),
        planner=PartitionPlanner(
            max_workers=settings.max_workers,
            min_shard=settings.min_shard,
            max_shard=settings.max_shard,
        ),
        retention=settings.retention,
    )


__all__ = ["OrchestratorSettings", "build_orchestrator"]
