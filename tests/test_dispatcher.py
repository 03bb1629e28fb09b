import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

# Allow tests to import the project packages without installation.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from idp_async.config import OrchestratorConfig, RetryPolicy  # noqa: E402
from idp_async.contracts import IntegrationMode, Manifest  # noqa: E402
from idp_async.correlation_store import InMemoryCorrelationStore  # noqa: E402
from idp_async.dispatcher import JobDispatcher  # noqa: E402
from idp_async.errors import JobStartFailed, TaskAlreadyClosed  # noqa: E402


def _client_error(code, operation="StartDocumentAnalysis"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _ScriptedJobService:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    def start(self, manifest, *, job_tag=None):
        self.calls.append((manifest.s3_path, job_tag))
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _RecordingEngine:
    def __init__(self, reject_with=None):
        self.successes = []
        self.failures = []
        self._reject_with = reject_with

    def send_success(self, continuation_token, output):
        self.successes.append((continuation_token, output))

    def send_failure(self, continuation_token, error, cause):
        if self._reject_with is not None:
            raise self._reject_with
        self.failures.append((continuation_token, error, cause))


class _BrokenStore:
    def put(self, record):
        raise _client_error("ProvisionedThroughputExceededException", "PutItem")

    def get_and_clear(self, job_id):
        return None


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _config(**overrides):
    values = dict(
        s3_output_bucket="out-bucket",
        s3_temp_output_prefix="textract-temp",
        retry_policy=RetryPolicy(max_attempts=3, backoff_rate=2.0, initial_interval_seconds=1.0),
    )
    values.update(overrides)
    return OrchestratorConfig(**values)


def _manifest(**overrides):
    payload = {"s3Path": "s3://in-bucket/docs/invoice.pdf", "textractFeatures": ["TABLES"]}
    payload.update(overrides)
    return Manifest.from_payload(payload)


def _dispatcher(job_service, *, config=None, store=None, engine=None, sleeps=None, clock=None):
    clock = clock or _Clock()
    config = config or _config()
    if store is None and config.integration_mode is IntegrationMode.CALLBACK:
        store = InMemoryCorrelationStore(clock=clock)
    sleeps = sleeps if sleeps is not None else []
    return JobDispatcher(
        job_service=job_service,
        config=config,
        store=store,
        workflow_engine=engine,
        sleep=sleeps.append,
        clock=clock,
    )


def test_dispatch_retries_throttling_then_stores_a_single_record():
    service = _ScriptedJobService(
        [_client_error("ThrottlingException"), _client_error("LimitExceededException"), "J1"]
    )
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    sleeps = []
    dispatcher = _dispatcher(service, store=store, sleeps=sleeps, clock=clock)

    result = dispatcher.dispatch(
        _manifest(),
        continuation_token="T1",
        execution_id="arn:aws:states:us-east-1:123456789012:execution:Textract:run-1",
    )

    assert result.job_id == "J1"
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert len(store) == 1
    assert service.calls[0][1] == "run-1"
    record = store.get_and_clear("J1")
    assert record.continuation_token == "T1"
    assert record.output_location == "s3://out-bucket/textract-temp/J1/"
    assert record.created_at == clock()


def test_non_retryable_error_fails_immediately_and_resumes_caller():
    service = _ScriptedJobService([_client_error("InvalidS3ObjectException")])
    engine = _RecordingEngine()
    store = InMemoryCorrelationStore(clock=_Clock())
    sleeps = []
    dispatcher = _dispatcher(service, store=store, engine=engine, sleeps=sleeps)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.error_code == "InvalidS3ObjectException"
    assert excinfo.value.attempts == 1
    assert len(service.calls) == 1
    assert sleeps == []
    assert len(store) == 0
    assert engine.failures[0][0] == "T1"
    assert engine.failures[0][1] == "InvalidS3ObjectException"


def test_exhausted_retries_leave_no_record():
    service = _ScriptedJobService([_client_error("ThrottlingException")] * 3)
    engine = _RecordingEngine()
    store = InMemoryCorrelationStore(clock=_Clock())
    dispatcher = _dispatcher(service, store=store, engine=engine)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.attempts == 3
    assert len(service.calls) == 3
    assert len(store) == 0
    assert [failure[1] for failure in engine.failures] == ["ThrottlingException"]


def test_retries_stop_when_time_budget_is_spent():
    service = _ScriptedJobService([_client_error("ThrottlingException")] * 3)
    sleeps = []
    dispatcher = _dispatcher(service, engine=_RecordingEngine(), sleeps=sleeps)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1", time_budget_seconds=1.5)

    assert excinfo.value.attempts == 2
    assert sleeps == [1.0]


def test_rejected_failure_resume_does_not_mask_start_error():
    service = _ScriptedJobService([_client_error("AccessDeniedException")])
    engine = _RecordingEngine(reject_with=TaskAlreadyClosed("closed"))
    dispatcher = _dispatcher(service, engine=engine)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.error_code == "AccessDeniedException"


def test_callback_dispatch_requires_continuation_token():
    service = _ScriptedJobService(["J1"])
    dispatcher = _dispatcher(service)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest())

    assert excinfo.value.error_code == "MissingContinuationToken"
    assert service.calls == []


def test_fire_and_forget_returns_job_id_without_record():
    service = _ScriptedJobService(["J1"])
    config = _config(integration_mode=IntegrationMode.FIRE_AND_FORGET)
    dispatcher = _dispatcher(service, config=config)

    result = dispatcher.dispatch(_manifest())

    assert result.job_id == "J1"
    assert result.record is None


def test_correlation_write_failure_is_reported_as_orphan(caplog):
    service = _ScriptedJobService(["J1"])
    engine = _RecordingEngine()
    dispatcher = _dispatcher(service, store=_BrokenStore(), engine=engine)

    with caplog.at_level(logging.INFO):
        with pytest.raises(JobStartFailed) as excinfo:
            dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.error_code == "CorrelationWriteFailed"
    assert excinfo.value.job_id == "J1"
    assert engine.failures[0][1] == "CorrelationWriteFailed"
    assert '"jobId": "J1"' in engine.failures[0][2]
    assert any(message.startswith("textract_async_orphaned_job: J1") for message in caplog.messages)


def test_dispatch_logs_started_job_and_page_count(caplog):
    service = _ScriptedJobService(["J1"])
    dispatcher = _dispatcher(service)

    with caplog.at_level(logging.INFO):
        dispatcher.dispatch(_manifest(numberOfPages=3), continuation_token="T1")

    assert "textract_async_GENERIC_job_started" in caplog.messages
    assert "textract_async_GENERIC_number_of_pages_send_to_process: 3" in caplog.messages


class _StoreCheckingPageCounter:
    def __init__(self, store):
        self._store = store
        self.record_present = []

    def count(self, manifest):
        self.record_present.append("J1" in self._store)
        return 2


class _MalformedResponseJobService:
    def start(self, manifest, *, job_tag=None):
        return {}["JobId"]


def test_page_count_runs_after_record_is_stored(caplog):
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    counter = _StoreCheckingPageCounter(store)
    dispatcher = JobDispatcher(
        job_service=_ScriptedJobService(["J1"]),
        config=_config(),
        store=store,
        page_counter=counter,
        sleep=lambda seconds: None,
        clock=clock,
    )

    with caplog.at_level(logging.INFO):
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert counter.record_present == [True]
    assert "textract_async_GENERIC_number_of_pages_send_to_process: 2" in caplog.messages


def test_unexpected_start_error_still_resumes_caller():
    engine = _RecordingEngine()
    store = InMemoryCorrelationStore(clock=_Clock())
    dispatcher = _dispatcher(_MalformedResponseJobService(), store=store, engine=engine)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.error_code == "KeyError"
    assert excinfo.value.attempts == 1
    assert engine.failures[0][:2] == ("T1", "KeyError")
    assert len(store) == 0


def test_unreachable_engine_does_not_mask_start_error():
    service = _ScriptedJobService([_client_error("InvalidS3ObjectException")])
    engine = _RecordingEngine(reject_with=EndpointConnectionError(endpoint_url="https://states.us-east-1.amazonaws.com"))
    dispatcher = _dispatcher(service, engine=engine)

    with pytest.raises(JobStartFailed) as excinfo:
        dispatcher.dispatch(_manifest(), continuation_token="T1")

    assert excinfo.value.error_code == "InvalidS3ObjectException"
    assert excinfo.value.attempts == 1
