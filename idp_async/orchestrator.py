"""Suspend/resume state machine around a single Textract job.

An orchestration moves through::

    DISPATCHING -> AWAITING_COMPLETION -> RESUMED_SUCCESS | RESUMED_FAILURE | TIMED_OUT

``AWAITING_COMPLETION`` is only a stored marker keyed by the continuation token;
nothing runs while a caller waits. The orchestrator implements the same
``send_success``/``send_failure`` entry points as the Step Functions engine, so
the completion listener can resume it directly.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from .config import OrchestratorConfig
from .contracts import IntegrationMode, Manifest, OrchestrationState, utcnow
from .correlation_store import CorrelationStore
from .dispatcher import JobDispatcher, PageCounter
from .errors import (
    ConfigurationError,
    InvalidContinuationToken,
    InvalidStateTransition,
    JobStartFailed,
    TaskAlreadyClosed,
)
from .listener import CompletionListener, PageMetadataSource
from .telemetry import OperationalTelemetry
from .textract_jobs import AsyncJobService
from .workflow_engine import SubworkflowRunner, WorkflowEngine

LOGGER = logging.getLogger(__name__)

PARENT_EXECUTION_KEY = "AWS_STEP_FUNCTIONS_STARTED_BY_EXECUTION_ID"

_TRANSITIONS = {
    OrchestrationState.DISPATCHING: {
        OrchestrationState.AWAITING_COMPLETION,
        OrchestrationState.RESUMED_SUCCESS,
        OrchestrationState.RESUMED_FAILURE,
        OrchestrationState.TIMED_OUT,
    },
    OrchestrationState.AWAITING_COMPLETION: {
        OrchestrationState.RESUMED_SUCCESS,
        OrchestrationState.RESUMED_FAILURE,
        OrchestrationState.TIMED_OUT,
    },
}


@dataclass
class Execution:
    """Durable state of one orchestration."""

    execution_id: str
    mode: IntegrationMode
    state: OrchestrationState
    started_at: datetime
    deadline: datetime
    continuation_token: Optional[str] = None
    job_id: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    cause: Optional[str] = None
    history: List[OrchestrationState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is OrchestrationState.RESUMED_SUCCESS

    def transition(self, target: OrchestrationState) -> None:
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidStateTransition(f"Execution {self.execution_id} cannot move from {self.state.value} to {target.value}")
        self.history.append(self.state)
        self.state = target


class ExecutionStore(Protocol):
    def save(self, execution: Execution) -> None:
        ...

    def get(self, execution_id: str) -> Optional[Execution]:
        ...

    def find_by_token(self, continuation_token: str) -> Optional[Execution]:
        ...

    def pending(self) -> List[Execution]:
        ...


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}
        self._by_token: Dict[str, str] = {}

    def save(self, execution: Execution) -> None:
        self._executions[execution.execution_id] = execution
        if execution.continuation_token:
            self._by_token[execution.continuation_token] = execution.execution_id

    def get(self, execution_id: str) -> Optional[Execution]:
        return self._executions.get(execution_id)

    def find_by_token(self, continuation_token: str) -> Optional[Execution]:
        execution_id = self._by_token.get(continuation_token)
        return self._executions.get(execution_id) if execution_id else None

    def pending(self) -> List[Execution]:
        return [execution for execution in self._executions.values() if not execution.state.is_terminal]


class SuspendResumeOrchestrator(WorkflowEngine):
    """Runs orchestrations for one configured integration mode."""

    def __init__(
        self,
        *,
        config: OrchestratorConfig,
        job_service: Optional[AsyncJobService] = None,
        store: Optional[CorrelationStore] = None,
        subworkflow_runner: Optional[SubworkflowRunner] = None,
        executions: Optional[ExecutionStore] = None,
        telemetry: Optional[OperationalTelemetry] = None,
        page_counter: Optional[PageCounter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._config = config.validate()
        self._store = store
        self._executions = executions or InMemoryExecutionStore()
        self._subworkflow_runner = subworkflow_runner
        self._telemetry = telemetry or OperationalTelemetry(config.textract_api.value)
        self._sleep = sleep
        self._clock = clock
        self._token_factory = token_factory
        self._lock = threading.RLock()

        mode = config.integration_mode
        if mode is IntegrationMode.SYNCHRONOUS_SUBWORKFLOW:
            if subworkflow_runner is None:
                raise ConfigurationError("SYNCHRONOUS_SUBWORKFLOW requires a subworkflow runner")
            self._dispatcher = None
        else:
            if job_service is None:
                raise ConfigurationError(f"{mode.value} requires a job service")
            self._dispatcher = JobDispatcher(
                job_service=job_service,
                config=config,
                store=store,
                workflow_engine=self,
                telemetry=self._telemetry,
                page_counter=page_counter,
                sleep=sleep,
                clock=clock,
            )

    @property
    def mode(self) -> IntegrationMode:
        return self._config.integration_mode

    def completion_listener(self, page_metadata: Optional[PageMetadataSource] = None) -> CompletionListener:
        """Listener wired to resume this orchestrator's suspended executions."""

        if self._store is None:
            raise ConfigurationError("Only CALLBACK orchestrations have a completion listener")
        return CompletionListener(
            store=self._store,
            workflow_engine=self,
            config=self._config,
            telemetry=self._telemetry,
            page_metadata=page_metadata,
            sleep=self._sleep,
            clock=self._clock,
        )

    def get(self, execution_id: str) -> Optional[Execution]:
        return self._executions.get(execution_id)

    def start(self, manifest: Manifest, *, execution_id: Optional[str] = None) -> Execution:
        now = self._clock()
        execution = Execution(
            execution_id=execution_id or str(uuid.uuid4()),
            mode=self.mode,
            state=OrchestrationState.DISPATCHING,
            started_at=now,
            deadline=now + timedelta(seconds=self._config.timeout_seconds),
            continuation_token=self._token_factory() if self.mode is IntegrationMode.CALLBACK else None,
        )
        with self._lock:
            self._executions.save(execution)

        if self.mode is IntegrationMode.SYNCHRONOUS_SUBWORKFLOW:
            return self._run_subworkflow(execution, manifest)

        try:
            result = self._dispatcher.dispatch(
                manifest,
                continuation_token=execution.continuation_token,
                execution_id=execution.execution_id,
            )
        except JobStartFailed as exc:
            with self._lock:
                execution.job_id = exc.job_id
                if execution.state is OrchestrationState.DISPATCHING:
                    self._finish(execution, OrchestrationState.RESUMED_FAILURE, error=exc.error_code, cause=str(exc))
            return execution

        with self._lock:
            execution.job_id = result.job_id
            if execution.state is not OrchestrationState.DISPATCHING:
                # Already resumed by a notification that overtook the acknowledgement.
                return execution
            if self.mode is IntegrationMode.CALLBACK:
                execution.transition(OrchestrationState.AWAITING_COMPLETION)
                self._executions.save(execution)
                LOGGER.info("Execution %s suspended waiting for job %s", execution.execution_id, result.job_id)
            else:
                self._finish(execution, OrchestrationState.RESUMED_SUCCESS, output={"JobId": result.job_id})
        return execution

    def send_success(self, continuation_token: str, output: Dict[str, Any]) -> None:
        with self._lock:
            execution = self._waiting_execution(continuation_token)
            self._finish(execution, OrchestrationState.RESUMED_SUCCESS, output=output)

    def send_failure(self, continuation_token: str, error: str, cause: str) -> None:
        with self._lock:
            execution = self._waiting_execution(continuation_token)
            self._finish(execution, OrchestrationState.RESUMED_FAILURE, error=error, cause=cause)

    def expire_overdue(self, now: Optional[datetime] = None) -> List[Execution]:
        """Force ``TIMED_OUT`` on every execution whose deadline has passed."""

        now = now or self._clock()
        expired: List[Execution] = []
        with self._lock:
            for execution in self._executions.pending():
                if execution.deadline <= now:
                    self._finish(
                        execution,
                        OrchestrationState.TIMED_OUT,
                        error="States.Timeout",
                        cause=f"No completion received before {execution.deadline.isoformat()}",
                    )
                    expired.append(execution)
        for execution in expired:
            LOGGER.warning("Execution %s timed out waiting for job %s", execution.execution_id, execution.job_id)
        return expired

    def _waiting_execution(self, continuation_token: str) -> Execution:
        execution = self._executions.find_by_token(continuation_token)
        if execution is None:
            raise InvalidContinuationToken("Unknown continuation token")
        if execution.state.is_terminal:
            raise TaskAlreadyClosed(f"Execution {execution.execution_id} is already {execution.state.value}")
        return execution

    def _finish(
        self,
        execution: Execution,
        target: OrchestrationState,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        cause: Optional[str] = None,
    ) -> None:
        execution.transition(target)
        execution.output = output or {}
        execution.error = error
        execution.cause = cause
        self._executions.save(execution)

    def _run_subworkflow(self, execution: Execution, manifest: Manifest) -> Execution:
        execution_input: Dict[str, Any] = {"Payload": {"manifest": manifest.model_dump(mode="json")}}
        if self._config.associate_with_parent:
            execution_input[PARENT_EXECUTION_KEY] = execution.execution_id
        try:
            result = self._subworkflow_runner.run(execution_input)
        except (ClientError, BotoCoreError) as exc:
            LOGGER.exception("Nested execution for %s could not be run", execution.execution_id)
            with self._lock:
                self._finish(execution, OrchestrationState.RESUMED_FAILURE, error=type(exc).__name__, cause=str(exc))
            return execution

        with self._lock:
            if result.succeeded:
                self._finish(execution, OrchestrationState.RESUMED_SUCCESS, output=result.output)
            elif result.status == "TIMED_OUT":
                self._finish(execution, OrchestrationState.TIMED_OUT, error=result.error, cause=result.cause)
            else:
                self._finish(
                    execution,
                    OrchestrationState.RESUMED_FAILURE,
                    error=result.error or result.status,
                    cause=result.cause or f"Nested execution {result.execution_arn} ended as {result.status}",
                )
        return execution


__all__ = [
    "Execution",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "PARENT_EXECUTION_KEY",
    "SuspendResumeOrchestrator",
]
