"""Workflow engine primitives used to resume suspended callers."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .contracts import ResumeSignal
from .errors import InvalidContinuationToken, TaskAlreadyClosed, client_error_code

LOGGER = logging.getLogger(__name__)

# Step Functions limits for SendTaskFailure
_MAX_ERROR_LENGTH = 256
_MAX_CAUSE_LENGTH = 32768

_CLOSED_TASK_CODES = {"TaskTimedOut", "TaskDoesNotExist"}
_INVALID_TOKEN_CODES = {"InvalidToken"}


class WorkflowEngine(Protocol):
    """Resume entry points of a workflow engine, addressed by continuation token."""

    def send_success(self, continuation_token: str, output: Dict[str, Any]) -> None:
        ...

    def send_failure(self, continuation_token: str, error: str, cause: str) -> None:
        ...


def deliver(engine: WorkflowEngine, signal: ResumeSignal) -> None:
    """Resume the caller identified by ``signal.continuation_token``."""

    if signal.succeeded:
        engine.send_success(signal.continuation_token, signal.output)
    else:
        engine.send_failure(signal.continuation_token, signal.error or "Error", signal.cause or "")


def _create_stepfunctions_client(region: Optional[str]):
    return boto3.client(
        "stepfunctions",
        region_name=region,
        config=Config(retries={"max_attempts": 5, "mode": "standard"}),
    )


class StepFunctionsWorkflowEngine(WorkflowEngine):
    """Resumes ``.waitForTaskToken`` tasks through SendTaskSuccess/SendTaskFailure."""

    def __init__(self, client: Optional[Any] = None, region: Optional[str] = None) -> None:
        self._client = client if client is not None else _create_stepfunctions_client(region)

    def send_success(self, continuation_token: str, output: Dict[str, Any]) -> None:
        try:
            self._client.send_task_success(taskToken=continuation_token, output=json.dumps(output, default=str))
        except ClientError as exc:
            _raise_rejected(exc)
            raise

    def send_failure(self, continuation_token: str, error: str, cause: str) -> None:
        try:
            self._client.send_task_failure(
                taskToken=continuation_token,
                error=error[:_MAX_ERROR_LENGTH],
                cause=cause[:_MAX_CAUSE_LENGTH],
            )
        except ClientError as exc:
            _raise_rejected(exc)
            raise


def _raise_rejected(exc: ClientError) -> None:
    code = client_error_code(exc)
    if code in _CLOSED_TASK_CODES:
        raise TaskAlreadyClosed(f"Task is no longer waiting ({code})") from exc
    if code in _INVALID_TOKEN_CODES:
        raise InvalidContinuationToken(f"Task token was rejected ({code})") from exc


@dataclass
class SubworkflowResult:
    """Terminal outcome of a nested execution."""

    execution_arn: str
    status: str
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    cause: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"


class SubworkflowRunner(Protocol):
    """Runs a nested workflow to completion on behalf of the caller."""

    def run(self, execution_input: Dict[str, Any], *, name: Optional[str] = None) -> SubworkflowResult:
        ...


class StepFunctionsSubworkflowRunner(SubworkflowRunner):
    """Starts a nested state machine execution and waits for it, like a ``.sync`` task."""

    def __init__(
        self,
        state_machine_arn: str,
        *,
        client: Optional[Any] = None,
        region: Optional[str] = None,
        poll_interval_seconds: float = 5.0,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state_machine_arn = state_machine_arn
        self._client = client if client is not None else _create_stepfunctions_client(region)
        self._poll_interval_seconds = poll_interval_seconds
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    def run(self, execution_input: Dict[str, Any], *, name: Optional[str] = None) -> SubworkflowResult:
        request: Dict[str, Any] = {
            "stateMachineArn": self.state_machine_arn,
            "input": json.dumps(execution_input, default=str),
        }
        if name:
            request["name"] = name
        execution_arn = self._client.start_execution(**request)["executionArn"]
        LOGGER.info("Started nested execution %s", execution_arn)

        started = self._monotonic()
        while True:
            description = self._client.describe_execution(executionArn=execution_arn)
            status = description["status"]
            if status != "RUNNING":
                return SubworkflowResult(
                    execution_arn=execution_arn,
                    status=status,
                    output=json.loads(description.get("output") or "{}"),
                    error=description.get("error"),
                    cause=description.get("cause"),
                )
            if self._timeout_seconds is not None and self._monotonic() - started >= self._timeout_seconds:
                LOGGER.warning("Nested execution %s exceeded %ss; stopping it", execution_arn, self._timeout_seconds)
                self._client.stop_execution(
                    executionArn=execution_arn,
                    error="States.Timeout",
                    cause="Parent execution timed out waiting for the nested execution",
                )
                return SubworkflowResult(
                    execution_arn=execution_arn,
                    status="TIMED_OUT",
                    error="States.Timeout",
                    cause=f"Nested execution exceeded {self._timeout_seconds}s",
                )
            self._sleep(self._poll_interval_seconds)


__all__ = [
    "StepFunctionsSubworkflowRunner",
    "StepFunctionsWorkflowEngine",
    "SubworkflowResult",
    "SubworkflowRunner",
    "WorkflowEngine",
    "deliver",
]
