import json
import logging
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from botocore.exceptions import ClientError

# Allow tests to import the project packages without installation.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from idp_async.config import OrchestratorConfig  # noqa: E402
from idp_async.contracts import CompletionNotification, JobRecord  # noqa: E402
from idp_async.correlation_store import InMemoryCorrelationStore  # noqa: E402
from idp_async.errors import TaskAlreadyClosed  # noqa: E402
from idp_async.listener import CompletionListener, ListenerOutcome  # noqa: E402


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class _RecordingEngine:
    def __init__(self, error=None):
        self.successes = []
        self.failures = []
        self._error = error
        self._lock = threading.Lock()

    def send_success(self, continuation_token, output):
        if self._error is not None:
            raise self._error
        with self._lock:
            self.successes.append((continuation_token, output))

    def send_failure(self, continuation_token, error, cause):
        if self._error is not None:
            raise self._error
        with self._lock:
            self.failures.append((continuation_token, error, cause))


class _PageMetadata:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def get_page_count(self, job_id, api=None):
        self.calls.append((job_id, api))
        return self.pages


class _LateWriteStore(InMemoryCorrelationStore):
    """Store whose record only lands after the first lookup, as when SNS overtakes the dispatcher."""

    def __init__(self, pending, clock):
        super().__init__(clock=clock)
        self._pending = pending
        self.lookups = 0

    def get_and_clear(self, job_id):
        self.lookups += 1
        if self._pending is not None:
            self.put(self._pending)
            self._pending = None
            return None
        return super().get_and_clear(job_id)


def _config(**overrides):
    values = dict(s3_output_bucket="out-bucket", s3_temp_output_prefix="textract-temp")
    values.update(overrides)
    return OrchestratorConfig(**values)


def _record(clock, job_id="J1", token="T1"):
    return JobRecord.create(
        job_id=job_id,
        continuation_token=token,
        output_location=f"s3://out-bucket/textract-temp/{job_id}/",
        ttl_seconds=3600,
        now=clock(),
    )


def _listener(store, engine, clock, sleeps=None, **kwargs):
    return CompletionListener(
        store=store,
        workflow_engine=engine,
        config=_config(),
        sleep=(sleeps if sleeps is not None else []).append,
        clock=clock,
        **kwargs,
    )


def _sns_event(*messages):
    return {
        "Records": [
            {"EventSource": "aws:sns", "Sns": {"Message": json.dumps(message) if isinstance(message, dict) else message}}
            for message in messages
        ]
    }


def test_success_notification_resumes_waiting_caller_once():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    engine = _RecordingEngine()
    listener = _listener(store, engine, clock)

    outcome = listener.handle(
        CompletionNotification.from_message({"jobId": "J1", "status": "SUCCEEDED", "resultLocationHint": "out/J1/"})
    )

    assert outcome is ListenerOutcome.RESUMED_SUCCESS
    assert engine.successes == [
        ("T1", {"JobId": "J1", "Status": "SUCCEEDED", "TextractTempOutputJsonPath": "out/J1/"})
    ]
    assert "J1" not in store


def test_duplicate_notification_is_discarded(caplog):
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    engine = _RecordingEngine()
    listener = _listener(store, engine, clock)
    notification = CompletionNotification.from_message({"JobId": "J1", "Status": "SUCCEEDED"})

    listener.handle(notification)
    with caplog.at_level(logging.INFO):
        outcome = listener.handle(notification)

    assert outcome is ListenerOutcome.UNMATCHED
    assert len(engine.successes) == 1
    assert "textract_async_unmatched_notification: J1 status=SUCCEEDED" in caplog.messages


def test_unknown_job_is_retried_then_discarded():
    clock = _Clock()
    engine = _RecordingEngine()
    sleeps = []
    listener = _listener(InMemoryCorrelationStore(clock=clock), engine, clock, sleeps=sleeps)

    outcome = listener.handle(CompletionNotification.from_message({"JobId": "J-unknown", "Status": "SUCCEEDED"}))

    assert outcome is ListenerOutcome.UNMATCHED
    assert sleeps == [0.5, 1.0]
    assert engine.successes == []
    assert engine.failures == []


def test_notification_that_overtakes_record_write_still_resumes():
    clock = _Clock()
    store = _LateWriteStore(_record(clock), clock)
    engine = _RecordingEngine()
    sleeps = []
    listener = _listener(store, engine, clock, sleeps=sleeps)

    outcome = listener.handle(CompletionNotification.from_message({"JobId": "J1", "Status": "SUCCEEDED"}))

    assert outcome is ListenerOutcome.RESUMED_SUCCESS
    assert store.lookups == 2
    assert sleeps == [0.5]
    assert engine.successes[0][1]["TextractTempOutputJsonPath"] == "s3://out-bucket/textract-temp/J1/"


def test_failed_job_resumes_caller_with_failure():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    engine = _RecordingEngine()
    listener = _listener(store, engine, clock)

    outcome = listener.handle(
        CompletionNotification.from_message({"JobId": "J1", "Status": "FAILED", "API": "StartDocumentAnalysis"})
    )

    assert outcome is ListenerOutcome.RESUMED_FAILURE
    token, error, cause = engine.failures[0]
    assert token == "T1"
    assert error == "TextractJobFailed"
    assert json.loads(cause)["API"] == "StartDocumentAnalysis"


def test_sns_event_logs_duration_and_processed_pages(caplog):
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock, job_id="J2", token="T2"))
    engine = _RecordingEngine()
    pages = _PageMetadata(7)
    listener = _listener(store, engine, clock, page_metadata=pages)
    finished = int(clock().timestamp() * 1000) + 4500

    with caplog.at_level(logging.INFO):
        report = listener.handle_sns_event(
            _sns_event(
                {
                    "JobId": "J2",
                    "Status": "SUCCEEDED",
                    "API": "StartDocumentTextDetection",
                    "Timestamp": finished,
                    "DocumentLocation": {"S3ObjectName": "a.pdf", "S3Bucket": "in-bucket"},
                },
                "not json",
                {"Status": "SUCCEEDED"},
            )
        )

    assert report.count(ListenerOutcome.RESUMED_SUCCESS) == 1
    assert report.count(ListenerOutcome.INVALID) == 2
    assert report.to_dict()["outcomes"]["resumed_success"] == ["J2"]
    assert pages.calls == [("J2", "StartDocumentTextDetection")]
    assert "textract_async_GENERIC_job_duration_in_ms: 4500" in caplog.messages
    assert "textract_async_GENERIC_number_of_pages_processed: 7" in caplog.messages


def test_closed_task_is_reported_without_raising():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    listener = _listener(store, _RecordingEngine(error=TaskAlreadyClosed("TaskTimedOut")), clock)

    outcome = listener.handle(CompletionNotification.from_message({"JobId": "J1", "Status": "SUCCEEDED"}))

    assert outcome is ListenerOutcome.RESUME_REJECTED
    assert "J1" not in store


def test_engine_outage_is_reported_as_resume_failure():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    error = ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "down"}}, "SendTaskSuccess")
    listener = _listener(store, _RecordingEngine(error=error), clock)

    outcome = listener.handle(CompletionNotification.from_message({"JobId": "J1", "Status": "SUCCEEDED"}))

    assert outcome is ListenerOutcome.RESUME_FAILED


def test_concurrent_duplicates_resume_exactly_once():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    engine = _RecordingEngine()
    listener = _listener(store, engine, clock)
    notification = CompletionNotification.from_message({"JobId": "J1", "Status": "SUCCEEDED"})

    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def deliver():
        barrier.wait()
        outcome = listener.handle(notification)
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=deliver) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ListenerOutcome.RESUMED_SUCCESS) == 1
    assert outcomes.count(ListenerOutcome.UNMATCHED) == workers - 1
    assert len(engine.successes) == 1


def test_non_object_sns_records_are_skipped():
    clock = _Clock()
    store = InMemoryCorrelationStore(clock=clock)
    store.put(_record(clock))
    engine = _RecordingEngine()
    listener = _listener(store, engine, clock)
    event = _sns_event({"JobId": "J1", "Status": "SUCCEEDED"})
    event["Records"] = ["not-a-record", {"Sns": "not-a-mapping"}] + event["Records"]

    report = listener.handle_sns_event(event)

    assert report.count(ListenerOutcome.INVALID) == 2
    assert report.count(ListenerOutcome.RESUMED_SUCCESS) == 1
    assert engine.successes[0][0] == "T1"
