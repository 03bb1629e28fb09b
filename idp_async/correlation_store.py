"""Correlation store mapping Textract job ids to the continuation token waiting for them."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from .contracts import JobRecord, utcnow
from .errors import RecordAlreadyExists, client_error_code

LOGGER = logging.getLogger(__name__)


class CorrelationStore(Protocol):
    """Insert-if-absent writes and atomic read-and-delete lookups keyed by job id."""

    def put(self, record: JobRecord) -> None:
        ...

    def get_and_clear(self, job_id: str) -> Optional[JobRecord]:
        ...


class InMemoryCorrelationStore(CorrelationStore):
    """Process-local store used by tests and local orchestration runs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._records: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def put(self, record: JobRecord) -> None:
        with self._lock:
            existing = self._records.get(record.job_id)
            if existing is not None and not existing.is_expired(self._clock()):
                raise RecordAlreadyExists(record.job_id)
            self._records[record.job_id] = record

    def get_and_clear(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._records.pop(job_id, None)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            LOGGER.info("Correlation record for job %s expired at %s", job_id, record.expires_at.isoformat())
            return None
        return record

    def purge_expired(self) -> List[str]:
        """Drop expired records, mirroring the TTL sweep of the durable backend."""

        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, record in self._records.items() if record.is_expired(now)]
            for job_id in expired:
                del self._records[job_id]
        return expired

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class DynamoDBCorrelationStore(CorrelationStore):
    """Token table backed by DynamoDB.

    The table uses ``ID`` as partition key and ``ttltimestamp`` as TTL attribute.
    DynamoDB removes expired items lazily, so expiry is also checked on read.
    """

    def __init__(
        self,
        table_name: str,
        *,
        table: Optional[Any] = None,
        region: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.table_name = table_name
        self._table = table if table is not None else boto3.resource("dynamodb", region_name=region).Table(table_name)
        self._clock = clock

    def put(self, record: JobRecord) -> None:
        try:
            # An item past its TTL but not yet swept may be replaced.
            self._table.put_item(
                Item=record.to_item(),
                ConditionExpression="attribute_not_exists(ID) OR ttltimestamp < :now",
                ExpressionAttributeValues={":now": int(self._clock().timestamp())},
            )
        except ClientError as exc:
            if client_error_code(exc) == "ConditionalCheckFailedException":
                raise RecordAlreadyExists(record.job_id) from exc
            raise
        LOGGER.debug("Stored correlation record for job %s in %s", record.job_id, self.table_name)

    def get_and_clear(self, job_id: str) -> Optional[JobRecord]:
        response = self._table.delete_item(Key={"ID": job_id}, ReturnValues="ALL_OLD")
        item = (response or {}).get("Attributes")
        if not item:
            return None
        record = JobRecord.from_item(item)
        if record.is_expired(self._clock()):
            LOGGER.info("Correlation record for job %s expired at %s", job_id, record.expires_at.isoformat())
            return None
        return record


__all__ = ["CorrelationStore", "DynamoDBCorrelationStore", "InMemoryCorrelationStore"]
