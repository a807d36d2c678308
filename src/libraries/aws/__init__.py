"""AWS backed adapters for the FrameFleet render orchestrator."""

from libraries.aws.blob_store import S3BlobStore
from libraries.aws.compute_fleet import LambdaComputeFleet
from libraries.aws.dynamodb import DynamoDBAuditLog, DynamoDBJobStore, DynamoDBLeaseLock

__all__ = [
    "DynamoDBAuditLog",
    "DynamoDBJobStore",
    "DynamoDBLeaseLock",
    "LambdaComputeFleet",
    "S3BlobStore",
]
