"""Request fingerprinting and duplicate detection for render jobs."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

import structlog

from .job_store import JobStore
from .models import Job

log = structlog.get_logger(__name__)

# Binary blobs and inline ``data:`` URIs contribute only their leading bytes.
BLOB_HASH_PREFIX_BYTES = 2048


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _blob_digest(data: bytes) -> str:
    return "blob:" + sha256_hex(data[:BLOB_HASH_PREFIX_BYTES])


def _canonical(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return _blob_digest(bytes(value))
    if isinstance(value, str) and value.startswith("data:"):
        return _blob_digest(value.encode("utf-8"))
    if isinstance(value, Mapping):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    return value


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    canonical = _canonical(payload)
    if isinstance(canonical, str):
        return canonical.encode("utf-8")
    return json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")


def fingerprint(
    *,
    content_id: str,
    engine: str,
    duration_ms: int,
    fps: int,
    payload: Any = None,
) -> str:
    """Return a deterministic key for the render-determining request fields.

    The whole composition is hashed; only embedded binary content is cut
    down to :data:`BLOB_HASH_PREFIX_BYTES` before hashing.
    """

    digest = sha256_hex(_payload_bytes(payload))
    return f"content:{content_id}|engine:{engine}|dur:{duration_ms}|fps:{fps}|p:{digest}"


class IdempotencyIndex:
    """Collapse logically equal render requests onto one job."""

    def __init__(self, store: JobStore) -> None:
        self._store = store

    def fingerprint(self, params: Mapping[str, Any]) -> str:
        explicit = params.get("idempotency_key")
        if explicit:
            return str(explicit)
        return fingerprint(
            content_id=str(params["content_id"]),
            engine=str(params.get("engine", "")),
            duration_ms=int(params.get("duration_ms", 0)),
            fps=int(params.get("fps", 0)),
            payload=params.get("payload"),
        )

    def lookup(self, key: str) -> Job | None:
        """Return the job holding ``key``; index failures disable dedup."""

        try:
            return self._store.find_by_idempotency_key(key)
        except Exception as exc:
            log.warning("render.idempotency.lookup_failed", key=key, error=str(exc))
            return None


__all__ = ["BLOB_HASH_PREFIX_BYTES", "IdempotencyIndex", "fingerprint", "sha256_hex"]
