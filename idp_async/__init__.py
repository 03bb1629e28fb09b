"""Callback orchestration for asynchronous Amazon Textract jobs."""

from .access_scope import PolicyStatement, scoped_access_policy
from .config import OrchestratorConfig, RetryPolicy
from .contracts import (
    CompletionNotification,
    IntegrationMode,
    JobRecord,
    Manifest,
    OrchestrationState,
    ResumeSignal,
)
from .correlation_store import CorrelationStore, DynamoDBCorrelationStore, InMemoryCorrelationStore
from .dispatcher import DispatchResult, JobDispatcher
from .errors import (
    ConfigurationError,
    InvalidContinuationToken,
    JobStartFailed,
    RecordAlreadyExists,
    TaskAlreadyClosed,
)
from .listener import CompletionListener, ListenerOutcome
from .orchestrator import Execution, SuspendResumeOrchestrator
from .workflow_engine import StepFunctionsWorkflowEngine

__all__ = [
    "CompletionListener",
    "CompletionNotification",
    "ConfigurationError",
    "CorrelationStore",
    "DispatchResult",
    "DynamoDBCorrelationStore",
    "Execution",
    "InMemoryCorrelationStore",
    "IntegrationMode",
    "InvalidContinuationToken",
    "JobDispatcher",
    "JobRecord",
    "JobStartFailed",
    "ListenerOutcome",
    "Manifest",
    "OrchestrationState",
    "OrchestratorConfig",
    "PolicyStatement",
    "RecordAlreadyExists",
    "ResumeSignal",
    "RetryPolicy",
    "StepFunctionsWorkflowEngine",
    "SuspendResumeOrchestrator",
    "TaskAlreadyClosed",
    "scoped_access_policy",
]
