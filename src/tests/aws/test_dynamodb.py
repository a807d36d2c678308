from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from libraries.aws.dynamodb import (
    DynamoDBAuditLog,
    DynamoDBJobStore,
    DynamoDBLeaseLock,
    deserialise_item,
    guard_id,
    serialise_item,
)
from libraries.render.base import (
    DuplicateJobError,
    JobAlreadyExistsError,
    LeaseUnavailableError,
    StoreUnavailableError,
)
from libraries.render.models import ErrorCode, ExternalHandle, Job, JobStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _client_error(code: str, operation: str, **extra: Any) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, **extra}, operation)


def _cancelled(*codes: str) -> ClientError:
    return _client_error(
        "TransactionCanceledException",
        "TransactWriteItems",
        CancellationReasons=[{"Code": code} for code in codes],
    )


class FakeDynamoDBClient:
    """Records low level calls; queued responses or errors are popped per method."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, list[Any]] = {}

    def queue(self, method: str, *outcomes: Any) -> None:
        self.responses.setdefault(method, []).extend(outcomes)

    def _handle(self, method: str, kwargs: dict[str, Any]) -> Any:
        self.calls.append((method, kwargs))
        pending = self.responses.get(method)
        outcome = pending.pop(0) if pending else {}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def get_item(self, **kwargs: Any) -> Any:
        return self._handle("get_item", kwargs)

    def put_item(self, **kwargs: Any) -> Any:
        return self._handle("put_item", kwargs)

    def update_item(self, **kwargs: Any) -> Any:
        return self._handle("update_item", kwargs)

    def delete_item(self, **kwargs: Any) -> Any:
        return self._handle("delete_item", kwargs)

    def query(self, **kwargs: Any) -> Any:
        return self._handle("query", kwargs)

    def transact_write_items(self, **kwargs: Any) -> Any:
        return self._handle("transact_write_items", kwargs)


@pytest.fixture
def client() -> FakeDynamoDBClient:
    return FakeDynamoDBClient()


@pytest.fixture
def table(client) -> DynamoDBJobStore:
    return DynamoDBJobStore("jobs", client=client, clock=lambda: NOW)


def _job(**attributes: Any) -> Job:
    return Job.new_queued(
        idempotency_key="key-1",
        now=NOW,
        retention=timedelta(hours=24),
        job_id="ff-test-1",
        content_id="content-1",
        credentials={"api_key": "secret"},
        payload={"scenes": [{"duration_ms": 1500.5}]},
        **attributes,
    )


def _stored(job: Job) -> dict[str, Any]:
    return {"Item": serialise_item(job.to_storage())}


def test_item_serialisation_round_trips_floats_and_drops_nulls() -> None:
    job = _job()
    item = serialise_item(job.to_storage())

    assert "output_ref" not in item
    assert Job.from_storage(deserialise_item(item)).payload == job.payload


def test_create_writes_job_and_guard_in_one_transaction(client, table) -> None:
    table.create_queued(_job())

    (call,) = client.calls_to("transact_write_items")
    job_put, guard_put = (entry["Put"] for entry in call["TransactItems"])
    assert job_put["ConditionExpression"] == "attribute_not_exists(job_id)"
    assert job_put["Item"]["job_id"] == {"S": "ff-test-1"}
    assert guard_put["Item"]["job_id"] == {"S": guard_id("key-1")}
    assert guard_put["Item"]["holder_job_id"] == {"S": "ff-test-1"}
    assert "holder_status = :failed" in guard_put["ConditionExpression"]
    assert table.stats.created == 1


def test_create_reports_job_id_collision(client, table) -> None:
    client.queue("transact_write_items", _cancelled("ConditionalCheckFailed", "None"))

    with pytest.raises(JobAlreadyExistsError):
        table.create_queued(_job())


def test_create_reports_live_holder_of_key(client, table) -> None:
    client.queue("transact_write_items", _cancelled("None", "ConditionalCheckFailed"))
    client.queue(
        "get_item",
        {
            "Item": serialise_item(
                {
                    "job_id": guard_id("key-1"),
                    "holder_job_id": "ff-holder",
                    "holder_status": "processing",
                    "ttl": int(NOW.timestamp()) + 3600,
                }
            )
        },
    )

    with pytest.raises(DuplicateJobError) as excinfo:
        table.create_queued(_job())

    assert excinfo.value.existing_job_id == "ff-holder"
    assert table.stats.duplicates_rejected == 1


def test_create_maps_throttling_to_store_unavailable(client, table) -> None:
    client.queue(
        "transact_write_items",
        _client_error("ProvisionedThroughputExceededException", "TransactWriteItems"),
    )

    with pytest.raises(StoreUnavailableError):
        table.create_queued(_job())


def test_get_job_decodes_and_hides_expired_items(client, table) -> None:
    job = _job()
    client.queue("get_item", _stored(job))

    fetched = table.get_job(job.job_id)

    assert fetched.job_id == job.job_id
    assert fetched.credentials == {"api_key": "secret"}
    assert client.calls_to("get_item")[0]["ConsistentRead"] is True

    expired = Job.new_queued(
        idempotency_key="old", now=NOW - timedelta(hours=30), retention=timedelta(hours=24)
    )
    client.queue("get_item", _stored(expired))
    assert table.get_job(expired.job_id) is None


def test_get_job_maps_network_errors(client, table) -> None:
    client.queue("get_item", EndpointConnectionError(endpoint_url="https://dynamodb"))

    with pytest.raises(StoreUnavailableError):
        table.get_job("ff-test-1")


def test_transition_builds_conditional_update(client, table) -> None:
    handle = ExternalHandle(
        render_id="r-1",
        bucket="staging",
        output_bucket="final",
        output_key="renders/out.mp4",
        shard_size=60,
        shard_count=12,
        total_frames=720,
        fps=30,
    )

    assert table.mark_processing("ff-test-1", handle)

    (params,) = client.calls_to("update_item")
    assert params["ConditionExpression"] == "attribute_exists(job_id) AND #s IN (:from0)"
    assert params["ExpressionAttributeValues"][":to"] == {"S": "processing"}
    assert params["ExpressionAttributeValues"][":from0"] == {"S": "queued"}
    assert "external_handle" in params["ExpressionAttributeNames"].values()


def test_transition_precondition_failure_returns_false(client, table) -> None:
    client.queue("update_item", _client_error("ConditionalCheckFailedException", "UpdateItem"))

    assert not table.transition("ff-test-1", {JobStatus.QUEUED}, JobStatus.PROCESSING)
    assert table.stats.transitions_skipped == 1


def test_failure_releases_the_guard_transactionally(client, table) -> None:
    client.queue("get_item", _stored(_job()))
    observed = NOW - timedelta(minutes=40)

    assert table.mark_failed(
        "ff-test-1", ErrorCode.TIMEOUT_STUCK, "stuck", if_updated_at=observed
    )

    (call,) = client.calls_to("transact_write_items")
    job_update, guard_update = (entry["Update"] for entry in call["TransactItems"])
    assert job_update["ConditionExpression"].endswith("AND #u = :observed")
    assert guard_update["Key"] == {"job_id": {"S": guard_id("key-1")}}
    assert guard_update["ConditionExpression"] == "holder_job_id = :job"
    written = dict(
        zip(
            (job_update["ExpressionAttributeNames"][f"#f{i}"] for i in range(4)),
            (job_update["ExpressionAttributeValues"][f":f{i}"] for i in range(4)),
        )
    )
    assert written["credentials"] == {"M": {}}
    assert written["error_code"] == {"S": ErrorCode.TIMEOUT_STUCK}


def test_failure_without_guard_falls_back_to_plain_update(client, table) -> None:
    client.queue("get_item", _stored(_job()))
    client.queue("transact_write_items", _cancelled("None", "ConditionalCheckFailed"))

    assert table.mark_failed("ff-test-1", ErrorCode.RENDER_FAILED, "boom")
    assert len(client.calls_to("update_item")) == 1


def test_failure_of_already_terminal_job_is_skipped(client, table) -> None:
    client.queue("get_item", _stored(_job()))
    client.queue("transact_write_items", _cancelled("ConditionalCheckFailed", "None"))

    assert not table.mark_failed("ff-test-1", ErrorCode.RENDER_FAILED, "boom")


def test_record_progress_is_conditional_on_high_water_mark(client, table) -> None:
    assert table.record_progress("ff-test-1", 42, "Encoding")

    (params,) = client.calls_to("update_item")
    assert "progress_percent < :p" in params["ConditionExpression"]
    assert params["ExpressionAttributeValues"][":p"] == {"N": "42"}


def test_find_by_key_follows_the_guard(client, table) -> None:
    client.queue(
        "get_item",
        {
            "Item": serialise_item(
                {"job_id": guard_id("key-1"), "holder_job_id": "ff-test-1"}
            )
        },
        _stored(_job()),
    )

    assert table.find_by_idempotency_key("key-1").job_id == "ff-test-1"


def test_find_stale_queries_status_index_and_paginates(client, table) -> None:
    older = _job()
    client.queue(
        "query",
        {"Items": [], "LastEvaluatedKey": {"job_id": {"S": "x"}}},
        {"Items": [serialise_item(older.to_storage())]},
        {"Items": []},
    )

    stale = table.find_stale(
        [JobStatus.QUEUED, JobStatus.PROCESSING], NOW + timedelta(minutes=1), limit=5
    )

    assert [job.job_id for job in stale] == [older.job_id]
    queries = client.calls_to("query")
    assert len(queries) == 3
    assert queries[0]["IndexName"] == "gsi_status"
    assert queries[0]["ScanIndexForward"] is True
    assert queries[1]["ExclusiveStartKey"] == {"job_id": {"S": "x"}}


def test_lease_acquire_and_contention(client) -> None:
    lease = DynamoDBLeaseLock("leases", client=client, clock=lambda: NOW)
    client.queue("put_item", {}, _client_error("ConditionalCheckFailedException", "PutItem"))

    assert lease.acquire("reaper:stuck-jobs", "a", 300)
    assert not lease.acquire("reaper:stuck-jobs", "b", 300)
    first = client.calls_to("put_item")[0]
    assert first["Item"]["expires_at"] == {"N": str(int(NOW.timestamp()) + 300)}


def test_lease_table_errors_surface(client) -> None:
    lease = DynamoDBLeaseLock("leases", client=client, clock=lambda: NOW)
    client.queue("put_item", _client_error("ResourceNotFoundException", "PutItem"))

    with pytest.raises(LeaseUnavailableError):
        lease.acquire("reaper:stuck-jobs", "a", 300)


def test_lease_release_by_other_owner_is_ignored(client) -> None:
    lease = DynamoDBLeaseLock("leases", client=client)
    client.queue("delete_item", _client_error("ConditionalCheckFailedException", "DeleteItem"))

    lease.release("reaper:stuck-jobs", "b")

    assert client.calls_to("delete_item")[0]["ConditionExpression"] == "#o = :owner"


def test_audit_records_expire(client) -> None:
    audit = DynamoDBAuditLog("audit", client=client, retention=timedelta(days=1))

    audit.write("reaper.sweep", {"checked": 2, "ratio": 0.5}, at=NOW)

    item = client.calls_to("put_item")[0]["Item"]
    assert item["audit_id"]["S"].startswith("reaper.sweep#2026-03-01T12:00:00+00:00#")
    assert item["ttl"] == {"N": str(int((NOW + timedelta(days=1)).timestamp()))}
    assert deserialise_item(item)["payload"] == {"checked": 2, "ratio": 0.5}
