"""Typed contracts shared by the dispatcher, the completion listener and the orchestrator."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ManifestError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class IntegrationMode(str, Enum):
    """How the calling workflow waits for a dispatched job."""

    FIRE_AND_FORGET = "FIRE_AND_FORGET"
    SYNCHRONOUS_SUBWORKFLOW = "SYNCHRONOUS_SUBWORKFLOW"
    CALLBACK = "CALLBACK"

    @classmethod
    def parse(cls, value: Any) -> "IntegrationMode":
        """Accept enum names as well as the Step Functions integration pattern names."""

        if isinstance(value, IntegrationMode):
            return value
        normalised = str(value).strip().upper().replace("-", "_")
        aliases = {
            "REQUEST_RESPONSE": cls.FIRE_AND_FORGET,
            "RUN_JOB": cls.SYNCHRONOUS_SUBWORKFLOW,
            "WAIT_FOR_TASK_TOKEN": cls.CALLBACK,
        }
        if normalised in aliases:
            return aliases[normalised]
        try:
            return cls(normalised)
        except ValueError as exc:
            raise ValueError(f"Unsupported integration mode '{value}'") from exc

    @property
    def requires_correlation(self) -> bool:
        return self is IntegrationMode.CALLBACK


class OrchestrationState(str, Enum):
    """Lifecycle of a single orchestrated Textract job."""

    DISPATCHING = "DISPATCHING"
    AWAITING_COMPLETION = "AWAITING_COMPLETION"
    RESUMED_SUCCESS = "RESUMED_SUCCESS"
    RESUMED_FAILURE = "RESUMED_FAILURE"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in {
            OrchestrationState.RESUMED_SUCCESS,
            OrchestrationState.RESUMED_FAILURE,
            OrchestrationState.TIMED_OUT,
        }


class TextractAPI(str, Enum):
    GENERIC = "GENERIC"
    EXPENSE = "EXPENSE"


class TextractFeature(str, Enum):
    TABLES = "TABLES"
    FORMS = "FORMS"
    QUERIES = "QUERIES"
    SIGNATURES = "SIGNATURES"
    LAYOUT = "LAYOUT"


class Query(BaseModel):
    """A single Textract query, as accepted by ``QueriesConfig``."""

    text: str
    alias: Optional[str] = None
    pages: List[str] = Field(default_factory=list)

    def to_request(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"Text": self.text}
        if self.alias:
            payload["Alias"] = self.alias
        if self.pages:
            payload["Pages"] = list(self.pages)
        return payload


class Manifest(BaseModel):
    """Document-analysis request carried through the workflow as ``Payload.manifest``."""

    s3_path: str
    textract_features: List[TextractFeature] = Field(default_factory=list)
    queries_config: List[Query] = Field(default_factory=list)
    textract_api: Optional[TextractAPI] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    number_of_pages: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Manifest":
        """Parse a manifest mapping, accepting both camelCase and snake_case keys."""

        if not isinstance(payload, dict):
            raise ManifestError("Manifest must be a JSON object")
        if "manifest" in payload and isinstance(payload["manifest"], dict):
            payload = payload["manifest"]

        s3_path = payload.get("s3Path") or payload.get("s3_path")
        if not s3_path:
            raise ManifestError("Manifest is missing 's3Path'")

        try:
            features = [
                TextractFeature(str(feature).upper())
                for feature in payload.get("textractFeatures") or payload.get("textract_features") or []
            ]
        except ValueError as exc:
            raise ManifestError(f"Unsupported Textract feature in manifest: {exc}") from exc

        queries: List[Query] = []
        for query in payload.get("queriesConfig") or payload.get("queries_config") or []:
            if not isinstance(query, dict) or not query.get("text"):
                raise ManifestError("Every query in 'queriesConfig' needs a 'text'")
            queries.append(Query(text=query["text"], alias=query.get("alias"), pages=query.get("pages") or []))

        if TextractFeature.QUERIES in features and not queries:
            raise ManifestError("The QUERIES feature requires at least one entry in 'queriesConfig'")

        api = payload.get("textractAPI") or payload.get("textract_api")
        number_of_pages = payload.get("numberOfPages") or payload.get("number_of_pages")
        try:
            return cls(
                s3_path=s3_path,
                textract_features=features,
                queries_config=queries,
                textract_api=TextractAPI(str(api).upper()) if api else None,
                metadata=payload.get("metadata") or {},
                number_of_pages=int(number_of_pages) if number_of_pages else None,
            )
        except ValueError as exc:
            raise ManifestError(f"Invalid manifest: {exc}") from exc

    def bucket_and_key(self) -> Tuple[str, str]:
        if not self.s3_path.startswith("s3://"):
            raise ManifestError(f"Manifest s3Path must be an s3:// URI, got '{self.s3_path}'")
        bucket, _, key = self.s3_path[len("s3://"):].partition("/")
        if not bucket or not key:
            raise ManifestError(f"Manifest s3Path must include bucket and key, got '{self.s3_path}'")
        return bucket, key


class JobRecord(BaseModel):
    """Correlation entry linking a Textract job to the caller waiting for it."""

    job_id: str
    continuation_token: str
    output_location: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def create(
        cls,
        *,
        job_id: str,
        continuation_token: str,
        output_location: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "JobRecord":
        created_at = now or utcnow()
        return cls(
            job_id=job_id,
            continuation_token=continuation_token,
            output_location=output_location,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_item(self) -> Dict[str, Any]:
        """Map the record into the DynamoDB item layout of the token table."""

        return {
            "ID": self.job_id,
            "Token": self.continuation_token,
            "OutputLocation": self.output_location,
            "CreatedAt": _epoch_ms(self.created_at),
            "ttltimestamp": int(self.expires_at.timestamp()),
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "JobRecord":
        return cls(
            job_id=item["ID"],
            continuation_token=item["Token"],
            output_location=item.get("OutputLocation", ""),
            created_at=_from_epoch_ms(item["CreatedAt"]),
            expires_at=datetime.fromtimestamp(int(item["ttltimestamp"]), tz=timezone.utc),
        )


class CompletionNotification(BaseModel):
    """Completion or failure event emitted by Textract through SNS."""

    job_id: str
    status: str
    api: Optional[str] = None
    job_tag: Optional[str] = None
    timestamp: Optional[datetime] = None
    result_location_hint: Optional[str] = None
    document_location: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "CompletionNotification":
        """Parse the Textract SNS message body (``JobId``/``Status``) or the generic shape."""

        job_id = message.get("JobId") or message.get("jobId") or message.get("job_id")
        status = message.get("Status") or message.get("status")
        if not job_id or not status:
            raise ValueError("Completion notification requires a job id and a status")

        timestamp = message.get("Timestamp") or message.get("timestamp")
        return cls(
            job_id=str(job_id),
            status=str(status).upper(),
            api=message.get("API") or message.get("api"),
            job_tag=message.get("JobTag") or message.get("jobTag"),
            timestamp=_from_epoch_ms(timestamp) if timestamp is not None else None,
            result_location_hint=message.get("resultLocationHint") or message.get("result_location_hint"),
            document_location=message.get("DocumentLocation") or {},
        )

    @classmethod
    def from_sns_record(cls, record: Dict[str, Any]) -> "CompletionNotification":
        body = (record.get("Sns") or {}).get("Message")
        if body is None:
            raise ValueError("SNS record does not contain a message")
        message = json.loads(body) if isinstance(body, str) else body
        return cls.from_message(message)


class ResumeSignal(BaseModel):
    """Outcome delivered to a suspended caller through its continuation token."""

    continuation_token: str
    succeeded: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    cause: Optional[str] = None

    @classmethod
    def success(cls, continuation_token: str, output: Dict[str, Any]) -> "ResumeSignal":
        return cls(continuation_token=continuation_token, succeeded=True, output=output)

    @classmethod
    def failure(cls, continuation_token: str, error: str, cause: str) -> "ResumeSignal":
        return cls(continuation_token=continuation_token, succeeded=False, error=error, cause=cause)


__all__ = [
    "CompletionNotification",
    "IntegrationMode",
    "JobRecord",
    "Manifest",
    "OrchestrationState",
    "Query",
    "ResumeSignal",
    "TextractAPI",
    "TextractFeature",
    "utcnow",
]
