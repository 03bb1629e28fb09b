"""Starts Textract jobs and records who is waiting for them."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from .config import OrchestratorConfig
from .contracts import IntegrationMode, JobRecord, Manifest, ResumeSignal, utcnow
from .correlation_store import CorrelationStore
from .errors import (
    ConfigurationError,
    JobStartFailed,
    ManifestError,
    ResumeRejected,
    client_error_code,
)
from .telemetry import OperationalTelemetry
from .textract_jobs import AsyncJobService
from .workflow_engine import WorkflowEngine, deliver

LOGGER = logging.getLogger(__name__)


class PageCounter(Protocol):
    def count(self, manifest: Manifest) -> Optional[int]:
        ...


@dataclass(frozen=True)
class DispatchResult:
    """Acknowledgement returned once a job is started (and correlated, for callbacks)."""

    job_id: str
    attempts: int
    record: Optional[JobRecord] = None


class JobDispatcher:
    """Calls the asynchronous start API with retries and writes the correlation record.

    In ``CALLBACK`` mode a start that cannot be completed resumes the caller with a
    failure before :class:`JobStartFailed` is raised, so the caller never stays suspended
    after a known dispatch failure.
    """

    def __init__(
        self,
        *,
        job_service: AsyncJobService,
        config: OrchestratorConfig,
        store: Optional[CorrelationStore] = None,
        workflow_engine: Optional[WorkflowEngine] = None,
        telemetry: Optional[OperationalTelemetry] = None,
        page_counter: Optional[PageCounter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if config.integration_mode is IntegrationMode.CALLBACK and store is None:
            raise ConfigurationError("The CALLBACK integration mode requires a correlation store")
        self._job_service = job_service
        self._config = config
        self._store = store
        self._workflow_engine = workflow_engine
        self._telemetry = telemetry or OperationalTelemetry(config.textract_api.value)
        self._page_counter = page_counter
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    def dispatch(
        self,
        manifest: Manifest,
        *,
        continuation_token: Optional[str] = None,
        execution_id: Optional[str] = None,
        time_budget_seconds: Optional[float] = None,
    ) -> DispatchResult:
        mode = self._config.integration_mode
        if mode is IntegrationMode.CALLBACK and not continuation_token:
            raise JobStartFailed(
                "A continuation token is required to dispatch in CALLBACK mode",
                error_code="MissingContinuationToken",
            )

        try:
            job_id, attempts = self._start_with_retries(
                manifest,
                job_tag=_job_tag_from(execution_id),
                time_budget_seconds=time_budget_seconds,
            )
        except JobStartFailed as exc:
            self._resume_with_failure(continuation_token, exc)
            raise

        if not mode.requires_correlation:
            self._report_started(job_id, manifest)
            return DispatchResult(job_id=job_id, attempts=attempts)

        record = JobRecord.create(
            job_id=job_id,
            continuation_token=continuation_token,
            output_location=self._config.output_location_for(job_id),
            ttl_seconds=self._config.record_ttl_seconds,
            now=self._clock(),
        )
        try:
            self._store.put(record)
        except Exception as exc:
            LOGGER.exception("Failed to store correlation record for Textract job %s", job_id)
            self._telemetry.orphaned_job(job_id, reason=type(exc).__name__)
            failure = JobStartFailed(
                f"Textract job {job_id} was started but could not be correlated: {exc}",
                error_code="CorrelationWriteFailed",
                attempts=attempts,
                job_id=job_id,
            )
            self._resume_with_failure(continuation_token, failure)
            raise failure from exc

        LOGGER.info("Textract job %s is awaiting completion", job_id)
        # Page counting downloads the document, so it runs only once the record is stored.
        self._report_started(job_id, manifest)
        return DispatchResult(job_id=job_id, attempts=attempts, record=record)

    def _start_with_retries(
        self,
        manifest: Manifest,
        *,
        job_tag: Optional[str],
        time_budget_seconds: Optional[float],
    ):
        policy = self._config.retry_policy
        attempt = 0
        waited = 0.0
        while True:
            attempt += 1
            try:
                return self._job_service.start(manifest, job_tag=job_tag), attempt
            except ManifestError as exc:
                LOGGER.error("Rejected manifest for %s: %s", manifest.s3_path, exc)
                raise JobStartFailed(str(exc), error_code="ManifestError", attempts=attempt) from exc
            except ClientError as exc:
                code = client_error_code(exc) or "ClientError"
                if not policy.is_retryable(code):
                    LOGGER.error("textract.exceptions.%s is not retryable: %s", code, exc)
                    raise JobStartFailed(str(exc), error_code=code, attempts=attempt) from exc
                if attempt >= policy.max_attempts:
                    LOGGER.error("textract.exceptions.%s persisted after %s attempts", code, attempt)
                    raise JobStartFailed(str(exc), error_code=code, attempts=attempt) from exc
                delay = policy.delay_for(attempt)
                if time_budget_seconds is not None and waited + delay > time_budget_seconds:
                    LOGGER.error(
                        "textract.exceptions.%s persisted; no time left for another attempt after %s",
                        code,
                        attempt,
                    )
                    raise JobStartFailed(str(exc), error_code=code, attempts=attempt) from exc
                LOGGER.warning(
                    "textract.exceptions.%s on attempt %s/%s; retrying in %.2fs",
                    code,
                    attempt,
                    policy.max_attempts,
                    delay,
                )
                self._sleep(delay)
                waited += delay
            except BotoCoreError as exc:
                LOGGER.error("Textract start failed: %s", exc)
                raise JobStartFailed(str(exc), error_code=type(exc).__name__, attempts=attempt) from exc
            except Exception as exc:
                LOGGER.exception("Unexpected error starting Textract job for %s", manifest.s3_path)
                raise JobStartFailed(str(exc), error_code=type(exc).__name__, attempts=attempt) from exc

    def _resume_with_failure(self, continuation_token: Optional[str], failure: JobStartFailed) -> None:
        if self._config.integration_mode is not IntegrationMode.CALLBACK or not continuation_token:
            return
        if self._workflow_engine is None:
            LOGGER.warning("No workflow engine configured; caller %s must rely on its timeout", continuation_token)
            return

        cause = json.dumps(
            {"errorMessage": str(failure), "attempts": failure.attempts, "jobId": failure.job_id}
        )
        try:
            deliver(self._workflow_engine, ResumeSignal.failure(continuation_token, failure.error_code, cause))
        except ResumeRejected as exc:
            LOGGER.warning("Caller could not be resumed after start failure: %s", exc)
        except (ClientError, BotoCoreError):
            LOGGER.exception("Failed to resume caller after start failure; it will time out instead")

    def _report_started(self, job_id: str, manifest: Manifest) -> None:
        self._telemetry.job_started(job_id)
        self._record_pages_sent(manifest)

    def _record_pages_sent(self, manifest: Manifest) -> None:
        if self._page_counter is None and not manifest.number_of_pages:
            return
        try:
            pages = manifest.number_of_pages or self._page_counter.count(manifest)
        except Exception:  # pragma: no cover - telemetry should not break jobs
            LOGGER.exception("Failed to count pages for %s", manifest.s3_path)
            return
        if pages:
            self._telemetry.pages_sent(pages)


def _job_tag_from(execution_id: Optional[str]) -> Optional[str]:
    if not execution_id:
        return None
    return execution_id.rsplit(":", 1)[-1]


__all__ = ["DispatchResult", "JobDispatcher"]
