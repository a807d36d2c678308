from __future__ import annotations

from typing import Any

import pytest
from botocore.exceptions import ClientError

from libraries.aws.blob_store import S3BlobStore
from libraries.render.base import BlobStoreError


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: ClientError | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def put_object(self, **kwargs: Any) -> None:
        self.calls.append(("put_object", kwargs))
        self._check()
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = {
            "ContentLength": len(kwargs["Body"]),
            "ContentType": kwargs.get("ContentType"),
        }

    def head_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("head_object", kwargs))
        self._check()
        try:
            return self.objects[(kwargs["Bucket"], kwargs["Key"])]
        except KeyError:
            raise ClientError(
                {
                    "Error": {"Code": "404", "Message": "Not Found"},
                    "ResponseMetadata": {"HTTPStatusCode": 404},
                },
                "HeadObject",
            ) from None

    def copy_object(self, **kwargs: Any) -> None:
        self.calls.append(("copy_object", kwargs))
        self._check()
        source = kwargs["CopySource"]
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = dict(
            self.objects[(source["Bucket"], source["Key"])]
        )

    def generate_presigned_url(
        self, ClientMethod: str, Params: dict[str, Any], ExpiresIn: int
    ) -> str:
        self._check()
        return f"https://s3.invalid/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


def _access_denied() -> ClientError:
    return ClientError(
        {
            "Error": {"Code": "AccessDenied", "Message": "Access Denied"},
            "ResponseMetadata": {"HTTPStatusCode": 403},
        },
        "HeadObject",
    )


@pytest.fixture
def s3() -> FakeS3Client:
    return FakeS3Client()


def test_head_returns_none_for_missing_objects(s3) -> None:
    assert S3BlobStore(s3).head("renders", "missing.mp4") is None


def test_put_then_head(s3) -> None:
    store = S3BlobStore(s3)

    store.put("renders", "out.mp4", b"1234", content_type="video/mp4")

    assert store.head("renders", "out.mp4") == {"size_bytes": 4, "content_type": "video/mp4"}


def test_copy_replaces_metadata_when_content_type_given(s3) -> None:
    store = S3BlobStore(s3)
    store.put("staging", "in.mp4", b"12")

    store.copy("staging", "in.mp4", "final", "out.mp4", content_type="video/mp4")

    _, params = s3.calls[-1]
    assert params["CopySource"] == {"Bucket": "staging", "Key": "in.mp4"}
    assert params["MetadataDirective"] == "REPLACE"
    assert params["ContentType"] == "video/mp4"


def test_presign_uses_get_object(s3) -> None:
    url = S3BlobStore(s3).presign_get("final", "out.mp4", expires_in=60)

    assert url == "https://s3.invalid/final/out.mp4?X-Amz-Expires=60"


@pytest.mark.parametrize(
    "operation",
    [
        lambda store: store.head("renders", "out.mp4"),
        lambda store: store.put("renders", "out.mp4", b""),
        lambda store: store.copy("a", "b", "c", "d"),
        lambda store: store.presign_get("renders", "out.mp4", expires_in=1),
    ],
)
def test_other_errors_raise_blob_store_error(s3, operation) -> None:
    s3.fail_with = _access_denied()

    with pytest.raises(BlobStoreError):
        operation(S3BlobStore(s3))
