"""S3 implementation of the render output blob store."""

from __future__ import annotations

from typing import Any, Protocol, cast

import structlog
from botocore.exceptions import ClientError

from libraries.aws.client import AWSError, create_client, is_not_found
from libraries.render.base import BlobHead, BlobStoreError

log = structlog.get_logger(__name__)


class S3ClientProtocol(Protocol):
    """Subset of :mod:`boto3`'s S3 client used by :class:`S3BlobStore`."""

    def put_object(self, **kwargs: Any) -> Any: ...

    def head_object(self, **kwargs: Any) -> Any: ...

    def copy_object(self, **kwargs: Any) -> Any: ...

    def generate_presigned_url(
        self, ClientMethod: str, Params: dict[str, Any], ExpiresIn: int
    ) -> str: ...


class S3BlobStore:
    """Blob store backed by S3; ``head`` returns ``None`` for missing objects."""

    def __init__(
        self, client: S3ClientProtocol | None = None, *, region: str | None = None
    ) -> None:
        if client is None:
            client = cast(S3ClientProtocol, create_client("s3", region=region))
        self._client = client

    def put(
        self, bucket: str, key: str, body: bytes, *, content_type: str | None = None
    ) -> None:
        params: dict[str, Any] = {"Bucket": bucket, "Key": key, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client.put_object(**params)
        except AWSError as exc:
            raise BlobStoreError(
                f"Failed to upload s3://{bucket}/{key}: {exc}",
                context={"bucket": bucket, "key": key},
            ) from exc

    def head(self, bucket: str, key: str) -> BlobHead | None:
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise BlobStoreError(
                f"Failed to inspect s3://{bucket}/{key}: {exc}",
                context={"bucket": bucket, "key": key},
            ) from exc
        except AWSError as exc:
            raise BlobStoreError(
                f"Failed to inspect s3://{bucket}/{key}: {exc}",
                context={"bucket": bucket, "key": key},
            ) from exc
        return BlobHead(
            size_bytes=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
        )

    def copy(
        self,
        source_bucket: str,
        source_key: str,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
    ) -> None:
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "CopySource": {"Bucket": source_bucket, "Key": source_key},
        }
        if content_type:
            params["ContentType"] = content_type
            params["MetadataDirective"] = "REPLACE"
        try:
            self._client.copy_object(**params)
        except AWSError as exc:
            raise BlobStoreError(
                f"Failed to copy s3://{source_bucket}/{source_key} to s3://{bucket}/{key}: {exc}",
                context={"source": f"{source_bucket}/{source_key}", "key": key},
            ) from exc
        log.info(
            "s3.copy.complete",
            source=f"{source_bucket}/{source_key}",
            destination=f"{bucket}/{key}",
        )

    def presign_get(self, bucket: str, key: str, *, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except AWSError as exc:
            raise BlobStoreError(
                f"Failed to presign s3://{bucket}/{key}: {exc}",
                context={"bucket": bucket, "key": key},
            ) from exc


__all__ = ["S3BlobStore", "S3ClientProtocol"]
