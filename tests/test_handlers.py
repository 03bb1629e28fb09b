import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Allow tests to import the Lambda handlers without packaging them.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from idp_async.contracts import JobRecord  # noqa: E402
from idp_async.correlation_store import InMemoryCorrelationStore  # noqa: E402
from idp_async.errors import ManifestError  # noqa: E402
from services.textract_async_api import handlers  # noqa: E402


class _FakeJobService:
    def __init__(self):
        self.started = []

    def start(self, manifest, *, job_tag=None):
        self.started.append((manifest.s3_path, job_tag))
        return "J1"

    def get_page_count(self, job_id, api=None):
        return 2


class _RecordingEngine:
    def __init__(self):
        self.successes = []
        self.failures = []

    def send_success(self, continuation_token, output):
        self.successes.append((continuation_token, output))

    def send_failure(self, continuation_token, error, cause):
        self.failures.append((continuation_token, error, cause))


class _NoPageCounter:
    def count(self, manifest):
        return None


class _LambdaContext:
    def get_remaining_time_in_millis(self):
        return 60_000


@pytest.fixture
def wiring(monkeypatch):
    for name, value in {
        "INTEGRATION_MODE": "CALLBACK",
        "S3_OUTPUT_BUCKET": "out-bucket",
        "S3_TEMP_OUTPUT_PREFIX": "textract-temp",
        "TOKEN_STORE_DDB": "token-table",
        "LOG_LEVEL": "INFO",
    }.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("TEXTRACT_API", raising=False)

    service = _FakeJobService()
    engine = _RecordingEngine()
    store = InMemoryCorrelationStore()
    monkeypatch.setattr(handlers, "TextractJobService", lambda config: service)
    monkeypatch.setattr(handlers, "StepFunctionsWorkflowEngine", lambda region=None: engine)
    monkeypatch.setattr(handlers, "S3PageCounter", lambda region=None: _NoPageCounter())
    monkeypatch.setattr(handlers, "_build_store", lambda config: store)
    return service, engine, store


def test_start_job_handler_correlates_job_with_task_token(wiring):
    service, engine, store = wiring
    event = {
        "Token": "T1",
        "ExecutionId": "arn:aws:states:us-east-1:123456789012:execution:TextractJobs:run-1",
        "Payload": {"manifest": {"s3Path": "s3://in-bucket/docs/a.pdf"}},
    }

    response = handlers.start_job_handler(event, _LambdaContext())

    assert response == {
        "JobId": "J1",
        "Attempts": 1,
        "TextractTempOutputJsonPath": "s3://out-bucket/textract-temp/J1/",
    }
    assert service.started == [("s3://in-bucket/docs/a.pdf", "run-1")]
    assert store.get_and_clear("J1").continuation_token == "T1"
    assert engine.failures == []


def test_start_job_handler_fails_task_for_invalid_manifest(wiring):
    service, engine, store = wiring

    with pytest.raises(ManifestError):
        handlers.start_job_handler({"Token": "T1", "Payload": {"manifest": {}}}, None)

    assert service.started == []
    assert engine.failures[0][:2] == ("T1", "ManifestError")
    assert len(store) == 0


def test_completion_listener_handler_resumes_task(wiring):
    _, engine, store = wiring
    store.put(
        JobRecord.create(
            job_id="J1",
            continuation_token="T1",
            output_location="s3://out-bucket/textract-temp/J1/",
            ttl_seconds=3600,
            now=datetime.now(timezone.utc),
        )
    )
    event = {"Records": [{"Sns": {"Message": json.dumps({"JobId": "J1", "Status": "SUCCEEDED"})}}]}

    response = handlers.completion_listener_handler(event, None)

    assert response == {"outcomes": {"resumed_success": ["J1"]}}
    assert engine.successes[0][0] == "T1"
