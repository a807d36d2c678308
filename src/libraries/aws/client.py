"""Construction helpers shared by the boto3 adapters."""

from __future__ import annotations

from typing import Any

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_READ_TIMEOUT = 30.0

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})

AWSError = (BotoCoreError, ClientError)


def _ensure_boto3() -> Any:
    try:
        import boto3
    except ImportError as exc:  # pragma: no cover - exercised in failure scenarios
        raise RuntimeError(
            "boto3 is required for the AWS backends. Install it via 'pip install boto3'."
        ) from exc
    return boto3


def create_client(
    service: str,
    *,
    region: str | None = None,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: float = DEFAULT_READ_TIMEOUT,
    max_attempts: int = 3,
) -> Any:
    """Return a boto3 client with explicit network timeouts."""

    boto3 = _ensure_boto3()
    config = Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )
    return boto3.client(service, region_name=region, config=config)


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_not_found(exc: ClientError) -> bool:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return status == 404 or error_code(exc) in NOT_FOUND_CODES


__all__ = [
    "AWSError",
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_READ_TIMEOUT",
    "create_client",
    "error_code",
    "is_not_found",
]
