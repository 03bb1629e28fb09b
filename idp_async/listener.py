"""Resumes suspended callers when Textract reports a job as finished."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from .config import OrchestratorConfig
from .contracts import CompletionNotification, JobRecord, ResumeSignal, utcnow
from .correlation_store import CorrelationStore
from .errors import ResumeRejected
from .telemetry import OperationalTelemetry
from .workflow_engine import WorkflowEngine, deliver

LOGGER = logging.getLogger(__name__)


class PageMetadataSource(Protocol):
    def get_page_count(self, job_id: str, api: Optional[str] = None) -> Optional[int]:
        ...


class ListenerOutcome(str, Enum):
    RESUMED_SUCCESS = "resumed_success"
    RESUMED_FAILURE = "resumed_failure"
    UNMATCHED = "unmatched"
    RESUME_REJECTED = "resume_rejected"
    RESUME_FAILED = "resume_failed"
    INVALID = "invalid"


@dataclass
class ListenerReport:
    """Per-invocation summary returned to the notification transport."""

    outcomes: Dict[str, List[str]] = field(default_factory=dict)

    def add(self, outcome: ListenerOutcome, job_id: str) -> None:
        self.outcomes.setdefault(outcome.value, []).append(job_id)

    def count(self, outcome: ListenerOutcome) -> int:
        return len(self.outcomes.get(outcome.value, []))

    def to_dict(self) -> Dict[str, Any]:
        return {"outcomes": {key: list(values) for key, values in self.outcomes.items()}}


class CompletionListener:
    """Consumes completion notifications and resumes each waiting caller at most once."""

    def __init__(
        self,
        *,
        store: CorrelationStore,
        workflow_engine: WorkflowEngine,
        config: OrchestratorConfig,
        telemetry: Optional[OperationalTelemetry] = None,
        page_metadata: Optional[PageMetadataSource] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._workflow_engine = workflow_engine
        self._config = config
        self._telemetry = telemetry or OperationalTelemetry(config.textract_api.value)
        self._page_metadata = page_metadata
        self._sleep = sleep
        self._clock = clock

    def handle_sns_event(self, event: Dict[str, Any]) -> ListenerReport:
        report = ListenerReport()
        for record in event.get("Records") or []:
            try:
                if not isinstance(record, dict):
                    raise TypeError(f"SNS record must be an object, got {type(record).__name__}")
                notification = CompletionNotification.from_sns_record(record)
            except (ValueError, TypeError, AttributeError) as exc:
                LOGGER.warning("Skipping malformed completion notification: %s", exc)
                report.add(ListenerOutcome.INVALID, "")
                continue
            report.add(self.handle(notification), notification.job_id)
        return report

    def handle_many(self, notifications: Iterable[CompletionNotification]) -> ListenerReport:
        report = ListenerReport()
        for notification in notifications:
            report.add(self.handle(notification), notification.job_id)
        return report

    def handle(self, notification: CompletionNotification) -> ListenerOutcome:
        LOGGER.debug("Received notification for job %s with status %s", notification.job_id, notification.status)
        record = self._lookup(notification.job_id)
        if record is None:
            # Duplicate delivery, expired record or a start that was never correlated.
            self._telemetry.unmatched_notification(notification.job_id, notification.status)
            return ListenerOutcome.UNMATCHED

        signal = self._signal_for(notification, record)
        try:
            deliver(self._workflow_engine, signal)
        except ResumeRejected as exc:
            LOGGER.warning("Caller for job %s could not be resumed: %s", notification.job_id, exc)
            return ListenerOutcome.RESUME_REJECTED
        except (ClientError, BotoCoreError):
            LOGGER.exception("Failed to resume caller for job %s; it will time out", notification.job_id)
            return ListenerOutcome.RESUME_FAILED

        self._record_finished(notification, record)
        if signal.succeeded:
            LOGGER.info("Resumed caller for job %s with success", notification.job_id)
            return ListenerOutcome.RESUMED_SUCCESS
        LOGGER.info("Resumed caller for job %s with failure status %s", notification.job_id, notification.status)
        return ListenerOutcome.RESUMED_FAILURE

    def _lookup(self, job_id: str) -> Optional[JobRecord]:
        # A notification may overtake the dispatcher's record write.
        attempts = self._config.listener_lookup_attempts
        interval = self._config.listener_lookup_interval_seconds
        for attempt in range(1, attempts + 1):
            record = self._store.get_and_clear(job_id)
            if record is not None:
                return record
            if attempt < attempts:
                LOGGER.debug("No correlation record for job %s yet (lookup %s/%s)", job_id, attempt, attempts)
                self._sleep(interval * (2 ** (attempt - 1)))
        return None

    def _signal_for(self, notification: CompletionNotification, record: JobRecord) -> ResumeSignal:
        if notification.succeeded:
            location = notification.result_location_hint or record.output_location
            return ResumeSignal.success(
                record.continuation_token,
                {
                    "JobId": notification.job_id,
                    "Status": notification.status,
                    "TextractTempOutputJsonPath": location,
                },
            )
        cause = json.dumps(
            {
                "JobId": notification.job_id,
                "Status": notification.status,
                "API": notification.api,
                "DocumentLocation": notification.document_location,
            }
        )
        return ResumeSignal.failure(record.continuation_token, f"TextractJob{notification.status.title()}", cause)

    def _record_finished(self, notification: CompletionNotification, record: JobRecord) -> None:
        finished_at = notification.timestamp or self._clock()
        duration_ms = max(int((finished_at - record.created_at).total_seconds() * 1000), 0)
        pages = None
        if notification.succeeded and self._page_metadata is not None:
            try:
                pages = self._page_metadata.get_page_count(notification.job_id, notification.api)
            except Exception:  # pragma: no cover - telemetry should not break jobs
                LOGGER.exception("Failed to read page metadata for job %s", notification.job_id)
        self._telemetry.job_finished(duration_ms, pages)


__all__ = ["CompletionListener", "ListenerOutcome", "ListenerReport"]
