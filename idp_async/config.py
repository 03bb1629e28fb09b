"""Runtime configuration for the asynchronous Textract orchestrator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Mapping, Optional

from .contracts import IntegrationMode, TextractAPI
from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

DEFAULT_RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "LimitExceededException",
        "InternalServerError",
        "ProvisionedThroughputExceededException",
    }
)

# 48 hours
DEFAULT_TIMEOUT_MINUTES = 2880

SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "FATAL")

TASK_INPUT_OBJECT = "object"
TASK_INPUT_JSON_PATH = "json_path"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for the Textract start call.

    ``max_attempts`` counts every start attempt, the first one included.
    """

    max_attempts: int = 100
    backoff_rate: float = 1.1
    initial_interval_seconds: float = 1.0
    retryable_error_codes: FrozenSet[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_ERROR_CODES)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.backoff_rate < 1.0:
            raise ConfigurationError("backoff_rate must be >= 1.0")
        if self.initial_interval_seconds < 0:
            raise ConfigurationError("initial_interval_seconds must not be negative")

    def is_retryable(self, error_code: Optional[str]) -> bool:
        return error_code in self.retryable_error_codes

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failed call (1-based)."""

        return self.initial_interval_seconds * (self.backoff_rate ** (attempt - 1))


@dataclass(frozen=True)
class OrchestratorConfig:
    """Everything the dispatcher, listener and orchestrator need at runtime."""

    integration_mode: IntegrationMode = IntegrationMode.CALLBACK
    textract_api: TextractAPI = TextractAPI.GENERIC
    s3_output_bucket: str = ""
    s3_temp_output_prefix: str = "textract-temp-output"
    notification_topic_arn: Optional[str] = None
    notification_role_arn: Optional[str] = None
    token_table_name: Optional[str] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    record_ttl_seconds: int = DEFAULT_TIMEOUT_MINUTES * 60
    associate_with_parent: bool = False
    task_input_type: str = TASK_INPUT_OBJECT
    task_input_has_token: bool = True
    log_level: str = "DEBUG"
    enable_cloudwatch_metrics: bool = False
    metric_namespace: str = "TextractConstructGenericAsync"
    listener_lookup_attempts: int = 3
    listener_lookup_interval_seconds: float = 0.5
    region: Optional[str] = None

    @property
    def timeout_seconds(self) -> int:
        return self.timeout_minutes * 60

    def output_location_for(self, job_id: str) -> str:
        prefix = self.s3_temp_output_prefix.strip("/")
        return f"s3://{self.s3_output_bucket}/{prefix}/{job_id}/" if prefix else f"s3://{self.s3_output_bucket}/{job_id}/"

    def with_mode(self, mode: IntegrationMode) -> "OrchestratorConfig":
        return replace(self, integration_mode=mode)

    def validate(self) -> "OrchestratorConfig":
        """Reject option combinations that can only be detected at configuration time."""

        if self.associate_with_parent and self.task_input_type != TASK_INPUT_OBJECT:
            raise ConfigurationError(
                "Could not enable 'associate_with_parent' because the task input is taken directly "
                "from a JSON path. Provide the input as an object instead."
            )
        if self.integration_mode is IntegrationMode.CALLBACK and not self.task_input_has_token:
            raise ConfigurationError(
                "Task token is required in the task input for the CALLBACK integration mode."
            )
        if self.task_input_type not in (TASK_INPUT_OBJECT, TASK_INPUT_JSON_PATH):
            raise ConfigurationError(f"Unsupported task input type '{self.task_input_type}'")
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ConfigurationError(
                f"Unsupported log level '{self.log_level}'. Supported: {', '.join(SUPPORTED_LOG_LEVELS)}"
            )
        if self.timeout_minutes <= 0:
            raise ConfigurationError("timeout_minutes must be positive")
        if self.record_ttl_seconds <= 0:
            raise ConfigurationError("record_ttl_seconds must be positive")
        if self.listener_lookup_attempts < 1:
            raise ConfigurationError("listener_lookup_attempts must be at least 1")
        if self.record_ttl_seconds < self.timeout_seconds:
            LOGGER.warning(
                "Record TTL (%ss) is shorter than the suspension timeout (%ss); late completions will be "
                "treated as orphaned",
                self.record_ttl_seconds,
                self.timeout_seconds,
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OrchestratorConfig":
        env = os.environ if environ is None else environ
        timeout_minutes = int(env.get("TEXTRACT_STATE_MACHINE_TIMEOUT_MINUTES", str(DEFAULT_TIMEOUT_MINUTES)))
        retry_codes = env.get("TEXTRACT_RETRYABLE_ERROR_CODES")
        retry_policy = RetryPolicy(
            max_attempts=int(env.get("TEXTRACT_ASYNC_CALL_MAX_RETRIES", "100")),
            backoff_rate=float(env.get("TEXTRACT_ASYNC_CALL_BACKOFF_RATE", "1.1")),
            initial_interval_seconds=float(env.get("TEXTRACT_ASYNC_CALL_INTERVAL", "1")),
            retryable_error_codes=(
                frozenset(code.strip() for code in retry_codes.split(",") if code.strip())
                if retry_codes
                else DEFAULT_RETRYABLE_ERROR_CODES
            ),
        )
        try:
            integration_mode = IntegrationMode.parse(env.get("INTEGRATION_MODE", IntegrationMode.CALLBACK.value))
            textract_api = TextractAPI(env.get("TEXTRACT_API", TextractAPI.GENERIC.value).upper())
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        return cls(
            integration_mode=integration_mode,
            textract_api=textract_api,
            s3_output_bucket=env.get("S3_OUTPUT_BUCKET", ""),
            s3_temp_output_prefix=env.get("S3_TEMP_OUTPUT_PREFIX", "textract-temp-output"),
            notification_topic_arn=env.get("NOTIFICATION_SNS"),
            notification_role_arn=env.get("NOTIFICATION_ROLE_ARN"),
            token_table_name=env.get("TOKEN_STORE_DDB"),
            retry_policy=retry_policy,
            timeout_minutes=timeout_minutes,
            record_ttl_seconds=int(env.get("TOKEN_RECORD_TTL_SECONDS", str(timeout_minutes * 60))),
            associate_with_parent=_parse_bool(env.get("ASSOCIATE_WITH_PARENT")),
            task_input_type=env.get("TASK_INPUT_TYPE", TASK_INPUT_OBJECT).lower(),
            log_level=env.get("LOG_LEVEL", "DEBUG").upper(),
            enable_cloudwatch_metrics=_parse_bool(env.get("ENABLE_CLOUDWATCH_METRICS")),
            metric_namespace=env.get("CLOUDWATCH_METRIC_NAMESPACE", "TextractConstructGenericAsync"),
            listener_lookup_attempts=int(env.get("LISTENER_LOOKUP_ATTEMPTS", "3")),
            listener_lookup_interval_seconds=float(env.get("LISTENER_LOOKUP_INTERVAL", "0.5")),
            region=env.get("AWS_REGION"),
        )


def _parse_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "DEFAULT_RETRYABLE_ERROR_CODES",
    "DEFAULT_TIMEOUT_MINUTES",
    "OrchestratorConfig",
    "RetryPolicy",
    "TASK_INPUT_JSON_PATH",
    "TASK_INPUT_OBJECT",
]
