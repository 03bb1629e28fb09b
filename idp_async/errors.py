"""Exception taxonomy for the asynchronous Textract orchestrator."""

from __future__ import annotations

from typing import Any, Optional


class OrchestrationError(RuntimeError):
    """Base class for orchestrator failures."""


class ConfigurationError(ValueError):
    """Raised when an orchestration is configured with an invalid combination of options."""


class ManifestError(OrchestrationError):
    """Raised when a manifest cannot be turned into a Textract start request."""


class JobStartFailed(OrchestrationError):
    """Raised when a Textract job could not be started (or could not be correlated)."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str,
        attempts: int = 0,
        job_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.attempts = attempts
        self.job_id = job_id


class RecordAlreadyExists(OrchestrationError):
    """Raised when a correlation record is written twice for the same job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"A correlation record already exists for job {job_id}")
        self.job_id = job_id


class ResumeRejected(OrchestrationError):
    """Raised by a workflow engine when a resume call cannot be applied."""


class TaskAlreadyClosed(ResumeRejected):
    """The suspended task already reached a terminal state (resumed or timed out)."""


class InvalidContinuationToken(ResumeRejected):
    """The continuation token is unknown to the workflow engine."""


class InvalidStateTransition(OrchestrationError):
    """Raised when the orchestration state machine is asked for a forbidden transition."""


def client_error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code of a botocore ``ClientError`` (``None`` for anything else)."""

    response: Any = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    return response.get("Error", {}).get("Code")


__all__ = [
    "ConfigurationError",
    "InvalidContinuationToken",
    "InvalidStateTransition",
    "JobStartFailed",
    "ManifestError",
    "OrchestrationError",
    "RecordAlreadyExists",
    "ResumeRejected",
    "TaskAlreadyClosed",
    "client_error_code",
]
