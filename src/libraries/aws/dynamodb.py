"""DynamoDB implementations of the job table, lease lock and audit log.

The job table is keyed on ``job_id``. Each idempotency key owns a guard item
(``job_id = "idem#<key>"``) written in the same transaction as the job it
points at, which is what makes "one non-failed job per key" hold under
concurrent starts. Stale-job scans use the ``gsi_status`` index
(partition ``status``, sort ``updated_at``).
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Collection, Mapping, Protocol, cast

import structlog
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from libraries.aws.client import AWSError, create_client, error_code
from libraries.render.base import (
    DuplicateJobError,
    JobAlreadyExistsError,
    LeaseUnavailableError,
    StoreUnavailableError,
)
from libraries.render.job_store import JobStore, prepare_transition_fields
from libraries.render.models import (
    PROGRESS_STAGE_LIMIT,
    ExternalHandle,
    Job,
    JobStatus,
    OutputRef,
    to_epoch_ms,
    utcnow,
)

log = structlog.get_logger(__name__)

GUARD_PREFIX = "idem#"
STATUS_INDEX = "gsi_status"
CONDITION_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELLED = "TransactionCanceledException"
AUDIT_RETENTION = timedelta(days=30)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


class DynamoDBClientProtocol(Protocol):
    """Subset of the low level DynamoDB client used by the adapters."""

    def get_item(self, **kwargs: Any) -> Any: ...

    def put_item(self, **kwargs: Any) -> Any: ...

    def update_item(self, **kwargs: Any) -> Any: ...

    def delete_item(self, **kwargs: Any) -> Any: ...

    def query(self, **kwargs: Any) -> Any: ...

    def transact_write_items(self, **kwargs: Any) -> Any: ...


def _dynamo_safe(value: Any) -> Any:
    if isinstance(value, (ExternalHandle, OutputRef)):
        value = value.to_storage()
    # DynamoDB numbers must be Decimal; floats are rejected by the serializer.
    return json.loads(json.dumps(value), parse_float=Decimal)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain(item) for item in value]
    return value


def serialise(value: Any) -> dict[str, Any]:
    return _serializer.serialize(_dynamo_safe(value))


def serialise_item(item: Mapping[str, Any]) -> dict[str, Any]:
    return {key: serialise(value) for key, value in item.items() if value is not None}


def deserialise_item(item: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _plain(_deserializer.deserialize(value)) for key, value in item.items()}


def guard_id(idempotency_key: str) -> str:
    return f"{GUARD_PREFIX}{idempotency_key}"


def _store_error(action: str, exc: Exception, **context: Any) -> StoreUnavailableError:
    return StoreUnavailableError(
        f"DynamoDB {action} failed: {exc}",
        hint="Check table permissions and throttling.",
        context=context,
    )


def _resolve_client(
    client: DynamoDBClientProtocol | None, region: str | None
) -> DynamoDBClientProtocol:
    if client is not None:
        return client
    return cast(DynamoDBClientProtocol, create_client("dynamodb", region=region))


class DynamoDBJobStore(JobStore):
    """Job table using condition expressions for every mutation."""

    def __init__(
        self,
        table_name: str,
        *,
        client: DynamoDBClientProtocol | None = None,
        region: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__()
        self._table = table_name
        self._client = _resolve_client(client, region)
        self._clock = clock or utcnow

    def _key(self, job_id: str) -> dict[str, Any]:
        return {"job_id": {"S": job_id}}

    def _now_seconds(self) -> int:
        return int(self._clock().timestamp())

    def _decode(self, raw: Mapping[str, Any] | None) -> Job | None:
        if not raw:
            return None
        data = deserialise_item(raw)
        if str(data.get("job_id", "")).startswith(GUARD_PREFIX):
            return None
        ttl = data.get("ttl")
        if ttl is not None and int(ttl) <= self._now_seconds():
            return None
        return Job.from_storage(data)

    def create_queued(self, job: Job) -> None:
        if job.status is not JobStatus.QUEUED:
            raise ValueError("Only queued jobs can be created.")
        storage = job.to_storage()
        guard = {
            "job_id": guard_id(job.idempotency_key),
            "holder_job_id": job.job_id,
            "holder_status": job.status.value,
            "ttl": storage["ttl"],
        }
        try:
            self._client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self._table,
                            "Item": serialise_item(storage),
                            "ConditionExpression": "attribute_not_exists(job_id)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self._table,
                            "Item": serialise_item(guard),
                            "ConditionExpression": (
                                "attribute_not_exists(job_id) OR holder_status = :failed"
                                " OR #ttl <= :now"
                            ),
                            "ExpressionAttributeNames": {"#ttl": "ttl"},
                            "ExpressionAttributeValues": {
                                ":failed": serialise(JobStatus.FAILED.value),
                                ":now": serialise(self._now_seconds()),
                            },
                        }
                    },
                ]
            )
        except ClientError as exc:
            if error_code(exc) != TRANSACTION_CANCELLED:
                raise _store_error("create", exc, job_id=job.job_id) from exc
            reasons = exc.response.get("CancellationReasons") or []
            codes = [str(reason.get("Code", "None")) for reason in reasons]
            if codes and codes[0] == "ConditionalCheckFailed":
                raise JobAlreadyExistsError(
                    f"Job '{job.job_id}' already exists.", context={"job_id": job.job_id}
                ) from exc
            if len(codes) > 1 and codes[1] == "ConditionalCheckFailed":
                holder = self._guard_holder(job.idempotency_key) or "unknown"
                self._stats.duplicates_rejected += 1
                raise DuplicateJobError(holder, context={"job_id": holder}) from exc
            raise _store_error("create", exc, job_id=job.job_id) from exc
        except AWSError as exc:
            raise _store_error("create", exc, job_id=job.job_id) from exc
        self._stats.created += 1
        log.info("render.store.created", job_id=job.job_id, table=self._table)

    def _guard_holder(self, idempotency_key: str) -> str | None:
        try:
            response = self._client.get_item(
                TableName=self._table,
                Key=self._key(guard_id(idempotency_key)),
                ConsistentRead=True,
            )
        except AWSError as exc:
            raise _store_error("get", exc, idempotency_key=idempotency_key) from exc
        item = response.get("Item")
        if not item:
            return None
        data = deserialise_item(item)
        ttl = data.get("ttl")
        if ttl is not None and int(ttl) <= self._now_seconds():
            return None
        return str(data["holder_job_id"])

    def get_job(self, job_id: str) -> Job | None:
        try:
            response = self._client.get_item(
                TableName=self._table, Key=self._key(job_id), ConsistentRead=True
            )
        except AWSError as exc:
            raise _store_error("get", exc, job_id=job_id) from exc
        return self._decode(response.get("Item"))

    def _update_params(
        self,
        job_id: str,
        from_statuses: Collection[JobStatus],
        to: JobStatus,
        prepared: Mapping[str, Any],
        moment: datetime,
        if_updated_at: datetime | None,
    ) -> dict[str, Any]:
        names = {"#s": "status", "#u": "updated_at"}
        values: dict[str, Any] = {
            ":to": serialise(to.value),
            ":u": serialise(to_epoch_ms(moment)),
        }
        assignments = ["#s = :to", "#u = :u"]
        for index, (field_name, value) in enumerate(sorted(prepared.items())):
            names[f"#f{index}"] = field_name
            values[f":f{index}"] = (
                {"NULL": True} if value is None else serialise(value)
            )
            assignments.append(f"#f{index} = :f{index}")

        sources = sorted(status.value for status in from_statuses)
        placeholders = []
        for index, status in enumerate(sources):
            values[f":from{index}"] = serialise(status)
            placeholders.append(f":from{index}")
        condition = f"attribute_exists(job_id) AND #s IN ({', '.join(placeholders)})"
        if if_updated_at is not None:
            values[":observed"] = serialise(to_epoch_ms(if_updated_at))
            condition += " AND #u = :observed"

        return {
            "TableName": self._table,
            "Key": self._key(job_id),
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ConditionExpression": condition,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }

    def transition(
        self,
        job_id: str,
        from_statuses: Collection[JobStatus],
        to: JobStatus,
        values: Mapping[str, Any] | None = None,
        *,
        if_updated_at: datetime | None = None,
    ) -> bool:
        prepared = prepare_transition_fields(from_statuses, to, values)
        moment = self._clock()
        params = self._update_params(
            job_id, from_statuses, to, prepared, moment, if_updated_at
        )
        if to is JobStatus.FAILED:
            applied = self._fail_with_guard(job_id, params)
        else:
            applied = self._conditional_update(params, job_id)
        self._record_transition(applied, moment)
        return applied

    def _conditional_update(self, params: Mapping[str, Any], job_id: str) -> bool:
        try:
            self._client.update_item(**params)
        except ClientError as exc:
            if error_code(exc) == CONDITION_FAILED:
                return False
            raise _store_error("update", exc, job_id=job_id) from exc
        except AWSError as exc:
            raise _store_error("update", exc, job_id=job_id) from exc
        return True

    def _fail_with_guard(self, job_id: str, params: Mapping[str, Any]) -> bool:
        """Fail the job and release its idempotency guard in one transaction."""

        current = self.get_job(job_id)
        if current is None:
            return False
        guard_update = {
            "TableName": self._table,
            "Key": self._key(guard_id(current.idempotency_key)),
            "UpdateExpression": "SET holder_status = :failed",
            "ConditionExpression": "holder_job_id = :job",
            "ExpressionAttributeValues": {
                ":failed": serialise(JobStatus.FAILED.value),
                ":job": serialise(job_id),
            },
        }
        try:
            self._client.transact_write_items(
                TransactItems=[{"Update": dict(params)}, {"Update": guard_update}]
            )
        except ClientError as exc:
            if error_code(exc) != TRANSACTION_CANCELLED:
                raise _store_error("update", exc, job_id=job_id) from exc
            reasons = exc.response.get("CancellationReasons") or []
            codes = [str(reason.get("Code", "None")) for reason in reasons]
            if codes and codes[0] == "ConditionalCheckFailed":
                return False
            if len(codes) > 1 and codes[1] == "ConditionalCheckFailed":
                # The guard expired or moved on; fail the job on its own.
                return self._conditional_update(params, job_id)
            raise _store_error("update", exc, job_id=job_id) from exc
        except AWSError as exc:
            raise _store_error("update", exc, job_id=job_id) from exc
        return True

    def record_progress(self, job_id: str, percent: int, stage: str) -> bool:
        moment = self._clock()
        params = {
            "TableName": self._table,
            "Key": self._key(job_id),
            "UpdateExpression": (
                "SET progress_percent = :p, progress_stage = :stage, #u = :u"
            ),
            "ConditionExpression": (
                "#s IN (:queued, :processing) AND progress_percent < :p"
            ),
            "ExpressionAttributeNames": {"#s": "status", "#u": "updated_at"},
            "ExpressionAttributeValues": {
                ":p": serialise(int(percent)),
                ":stage": serialise(stage[:PROGRESS_STAGE_LIMIT]),
                ":u": serialise(to_epoch_ms(moment)),
                ":queued": serialise(JobStatus.QUEUED.value),
                ":processing": serialise(JobStatus.PROCESSING.value),
            },
        }
        applied = self._conditional_update(params, job_id)
        self._record_transition(applied, moment)
        return applied

    def find_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        holder = self._guard_holder(idempotency_key)
        if holder is None:
            return None
        return self.get_job(holder)

    def find_stale(
        self,
        statuses: Collection[JobStatus],
        older_than: datetime,
        *,
        limit: int,
    ) -> list[Job]:
        if limit <= 0:
            return []
        matches: list[Job] = []
        for status in statuses:
            matches.extend(self._query_status(status, older_than, limit))
        matches.sort(key=lambda job: job.updated_at)
        return matches[:limit]

    def _query_status(
        self, status: JobStatus, older_than: datetime, limit: int
    ) -> list[Job]:
        params: dict[str, Any] = {
            "TableName": self._table,
            "IndexName": STATUS_INDEX,
            "KeyConditionExpression": "#s = :s AND #u < :cutoff",
            "ExpressionAttributeNames": {"#s": "status", "#u": "updated_at"},
            "ExpressionAttributeValues": {
                ":s": serialise(status.value),
                ":cutoff": serialise(to_epoch_ms(older_than)),
            },
            "ScanIndexForward": True,
            "Limit": limit,
        }
        jobs: list[Job] = []
        while len(jobs) < limit:
            try:
                response = self._client.query(**params)
            except AWSError as exc:
                raise _store_error("query", exc, index=STATUS_INDEX) from exc
            for raw in response.get("Items", []):
                job = self._decode(raw)
                if job is not None:
                    jobs.append(job)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            params["ExclusiveStartKey"] = last_key
        return jobs[:limit]


class DynamoDBLeaseLock:
    """Lease items keyed on ``lock_name`` with an expiry timestamp."""

    def __init__(
        self,
        table_name: str,
        *,
        client: DynamoDBClientProtocol | None = None,
        region: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._table = table_name
        self._client = _resolve_client(client, region)
        self._clock = clock or utcnow

    def acquire(self, name: str, owner: str, ttl_seconds: int) -> bool:
        now = int(self._clock().timestamp())
        expires = now + ttl_seconds
        try:
            self._client.put_item(
                TableName=self._table,
                Item=serialise_item(
                    {"lock_name": name, "owner": owner, "expires_at": expires, "ttl": expires}
                ),
                ConditionExpression=(
                    "attribute_not_exists(lock_name) OR expires_at < :now OR #o = :owner"
                ),
                ExpressionAttributeNames={"#o": "owner"},
                ExpressionAttributeValues={
                    ":now": serialise(now),
                    ":owner": serialise(owner),
                },
            )
        except ClientError as exc:
            if error_code(exc) == CONDITION_FAILED:
                return False
            raise LeaseUnavailableError(f"Lease table unavailable: {exc}") from exc
        except AWSError as exc:
            raise LeaseUnavailableError(f"Lease table unavailable: {exc}") from exc
        return True

    def release(self, name: str, owner: str) -> None:
        try:
            self._client.delete_item(
                TableName=self._table,
                Key={"lock_name": serialise(name)},
                ConditionExpression="#o = :owner",
                ExpressionAttributeNames={"#o": "owner"},
                ExpressionAttributeValues={":owner": serialise(owner)},
            )
        except ClientError as exc:
            if error_code(exc) == CONDITION_FAILED:
                log.info("render.lease.release_skipped", name=name, owner=owner)
                return
            raise LeaseUnavailableError(f"Lease table unavailable: {exc}") from exc
        except AWSError as exc:
            raise LeaseUnavailableError(f"Lease table unavailable: {exc}") from exc


class DynamoDBAuditLog:
    """Append-only audit records with a retention TTL."""

    def __init__(
        self,
        table_name: str,
        *,
        client: DynamoDBClientProtocol | None = None,
        region: str | None = None,
        retention: timedelta = AUDIT_RETENTION,
    ) -> None:
        self._table = table_name
        self._client = _resolve_client(client, region)
        self._retention = retention

    def write(self, event: str, payload: Mapping[str, Any], *, at: datetime) -> None:
        moment = at.astimezone(timezone.utc)
        item = {
            "audit_id": f"{event}#{moment.isoformat()}#{uuid.uuid4().hex[:8]}",
            "event": event,
            "at": to_epoch_ms(moment),
            "payload": dict(payload),
            "ttl": int((moment + self._retention).timestamp()),
        }
        self._client.put_item(TableName=self._table, Item=serialise_item(item))


__all__ = [
    "DynamoDBAuditLog",
    "DynamoDBJobStore",
    "DynamoDBLeaseLock",
    "GUARD_PREFIX",
    "STATUS_INDEX",
    "deserialise_item",
    "guard_id",
    "serialise_item",
]
