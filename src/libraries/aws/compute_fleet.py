"""Compute fleet adapter invoking a serverless renderer on AWS Lambda."""

from __future__ import annotations

import json
from typing import Any, Mapping, Protocol, cast

import structlog
from botocore.exceptions import ClientError

from libraries.aws.client import AWSError, create_client, is_not_found
from libraries.render.base import (
    FleetError,
    FleetProgress,
    FleetRenderRequest,
    FleetSubmission,
    ProgressUnavailableError,
)

log = structlog.get_logger(__name__)

DEFAULT_COMPOSITION = "FrameFleetVideo"
DEFAULT_RENDER_TIMEOUT_MS = 120_000


class LambdaClientProtocol(Protocol):
    def invoke(self, **kwargs: Any) -> Any: ...


class S3ReadProtocol(Protocol):
    def get_object(self, **kwargs: Any) -> Any: ...


def progress_key(render_id: str) -> str:
    return f"renders/{render_id}/progress.json"


def output_key(render_id: str) -> str:
    return f"renders/{render_id}/out.mp4"


def parse_progress(
    document: Mapping[str, Any], *, render_id: str, bucket: str
) -> FleetProgress:
    """Normalise a renderer ``progress.json`` document."""

    post_render = document.get("postRenderData") or {}
    metadata = document.get("renderMetadata") or {}
    errors = document.get("errors") or []
    chunks = document.get("chunks")
    shards_done = len(chunks) if isinstance(chunks, list) else int(chunks or 0)
    shards_total = metadata.get("estimatedTotalLambdaInvocations") or metadata.get(
        "totalChunks"
    )

    error_message = None
    if errors:
        first = errors[0]
        error_message = first.get("message") if isinstance(first, Mapping) else str(first)

    return FleetProgress(
        done=bool(post_render) or bool(document.get("done")),
        fatal_error=bool(document.get("fatalErrorEncountered")) or bool(errors),
        error_message=error_message,
        frames_rendered=int(document.get("framesRendered") or 0),
        frames_encoded=int(document.get("framesEncoded") or 0),
        shards_done=shards_done,
        shards_total=int(shards_total) if shards_total else None,
        output_bucket=bucket,
        output_key=post_render.get("outKey") or output_key(render_id),
        output_size=post_render.get("outputSize"),
        output_url=post_render.get("outputFile"),
        time_to_finish_ms=post_render.get("timeToFinish"),
    )


class LambdaComputeFleet:
    """Start renders with a synchronous Lambda call and read S3 progress files.

    The start call only schedules the render; the renderer fans shards out to
    further invocations and keeps ``progress.json`` current in ``bucket``.
    """

    def __init__(
        self,
        *,
        function_name: str,
        serve_url: str,
        bucket: str,
        composition: str = DEFAULT_COMPOSITION,
        renderer_version: str | None = None,
        render_timeout_ms: int = DEFAULT_RENDER_TIMEOUT_MS,
        region: str | None = None,
        lambda_client: LambdaClientProtocol | None = None,
        s3_client: S3ReadProtocol | None = None,
        invoke_timeout: float = 90.0,
    ) -> None:
        self._function_name = function_name
        self._serve_url = serve_url
        self._bucket = bucket
        self._composition = composition
        self._renderer_version = renderer_version
        self._render_timeout_ms = render_timeout_ms
        if lambda_client is None:
            lambda_client = cast(
                LambdaClientProtocol,
                create_client(
                    "lambda", region=region, read_timeout=invoke_timeout, max_attempts=1
                ),
            )
        if s3_client is None:
            s3_client = cast(S3ReadProtocol, create_client("s3", region=region))
        self._lambda = lambda_client
        self._s3 = s3_client

    def build_payload(self, request: FleetRenderRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "start",
            "serveUrl": self._serve_url,
            "composition": self._composition,
            "codec": "h264",
            "inputProps": {
                "type": "payload",
                "payload": json.dumps(
                    {"projectJson": request["composition"], "jobId": request["job_id"]}
                ),
            },
            "framesPerLambda": request["shard_size"],
            "frameRange": None,
            "bucketName": self._bucket,
            "imageFormat": "jpeg",
            "jpegQuality": 80,
            "privacy": "private",
            "maxRetries": 1,
            "overwrite": True,
            "timeoutInMilliseconds": self._render_timeout_ms,
            "envVariables": dict(request["credentials"]),
            "logLevel": "info",
        }
        if self._renderer_version:
            payload["version"] = self._renderer_version
        return payload

    def start_render(self, request: FleetRenderRequest) -> FleetSubmission:
        payload = self.build_payload(request)
        log.info(
            "lambda.render.invoke",
            function=self._function_name,
            job_id=request["job_id"],
            shard_size=request["shard_size"],
            total_frames=request["total_frames"],
        )
        try:
            response = self._lambda.invoke(
                FunctionName=self._function_name,
                InvocationType="RequestResponse",
                Payload=json.dumps(payload).encode("utf-8"),
            )
        except AWSError as exc:
            raise FleetError(
                f"Lambda invocation failed: {exc}",
                context={"function": self._function_name},
            ) from exc

        body = response.get("Payload")
        raw = body.read() if hasattr(body, "read") else body or b"{}"
        try:
            result = json.loads(raw or b"{}")
        except ValueError as exc:
            raise FleetError("Renderer returned an unreadable response.") from exc

        if response.get("FunctionError") or result.get("type") == "error":
            message = (
                result.get("message")
                or result.get("errorMessage")
                or "Renderer refused the job."
            )
            raise FleetError(str(message), context={"function": self._function_name})

        render_id = result.get("renderId")
        if not render_id:
            raise FleetError(
                "Renderer response has no renderId.",
                context={"function": self._function_name},
            )
        render_id = str(render_id)
        bucket = str(result.get("bucketName") or self._bucket)
        return FleetSubmission(
            render_id=render_id,
            bucket=bucket,
            staging_key=output_key(render_id),
        )

    def get_progress(self, render_id: str, bucket: str) -> FleetProgress | None:
        key = progress_key(render_id)
        try:
            response = self._s3.get_object(Bucket=bucket, Key=key)
            raw = response["Body"].read()
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise ProgressUnavailableError(
                f"Could not read s3://{bucket}/{key}: {exc}",
                context={"render_id": render_id},
            ) from exc
        except AWSError as exc:
            raise ProgressUnavailableError(
                f"Could not read s3://{bucket}/{key}: {exc}",
                context={"render_id": render_id},
            ) from exc
        try:
            document = json.loads(raw)
        except ValueError as exc:
            # Partially written files are retried on the next poll.
            raise ProgressUnavailableError(
                f"Progress file for '{render_id}' is not valid JSON.",
                context={"render_id": render_id},
            ) from exc
        if not isinstance(document, Mapping):
            raise ProgressUnavailableError(
                f"Progress file for '{render_id}' has an unexpected shape."
            )
        return parse_progress(document, render_id=render_id, bucket=bucket)


__all__ = [
    "LambdaComputeFleet",
    "output_key",
    "parse_progress",
    "progress_key",
]
