"""Lambda handlers for starting Textract jobs and receiving their SNS completions."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from idp_async.config import OrchestratorConfig
from idp_async.contracts import IntegrationMode, Manifest, ResumeSignal
from idp_async.correlation_store import DynamoDBCorrelationStore
from idp_async.dispatcher import JobDispatcher
from idp_async.errors import ConfigurationError, ManifestError, ResumeRejected
from idp_async.listener import CompletionListener
from idp_async.page_counter import S3PageCounter
from idp_async.telemetry import CloudWatchMetricsEmitter, OperationalTelemetry
from idp_async.textract_jobs import TextractJobService
from idp_async.workflow_engine import StepFunctionsWorkflowEngine, deliver

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)

# Seconds kept back from the Lambda deadline for the record write and the response.
_TIME_BUDGET_MARGIN_SECONDS = 10.0


def start_job_handler(event: Dict[str, Any], context: Optional[Any]) -> Dict[str, Any]:
    """Start a Textract job for ``Payload.manifest`` and correlate it with ``Token``.

    Expected event::

        {"Token": "<task token>", "ExecutionId": "<execution arn>", "Payload": {"manifest": {...}}}
    """

    config = _load_config()
    LOGGER.debug("Received event: %s", json.dumps(event, default=str))

    token = event.get("Token")
    execution_id = event.get("ExecutionId")
    engine = StepFunctionsWorkflowEngine(region=config.region)

    try:
        manifest = Manifest.from_payload(event.get("Payload") or {})
    except ManifestError as exc:
        LOGGER.error("Invalid manifest in execution %s: %s", execution_id, exc)
        if token and config.integration_mode is IntegrationMode.CALLBACK:
            _send_failure(engine, token, "ManifestError", str(exc))
        raise

    dispatcher = JobDispatcher(
        job_service=TextractJobService(config),
        config=config,
        store=_build_store(config) if config.integration_mode is IntegrationMode.CALLBACK else None,
        workflow_engine=engine,
        telemetry=_build_telemetry(config),
        page_counter=S3PageCounter(region=config.region),
    )
    result = dispatcher.dispatch(
        manifest,
        continuation_token=token,
        execution_id=execution_id,
        time_budget_seconds=_time_budget(context),
    )
    return {
        "JobId": result.job_id,
        "Attempts": result.attempts,
        "TextractTempOutputJsonPath": config.output_location_for(result.job_id),
    }


def completion_listener_handler(event: Dict[str, Any], context: Optional[Any]) -> Dict[str, Any]:
    """Resume the waiting task for every Textract completion in an SNS event."""

    config = _load_config()
    listener = CompletionListener(
        store=_build_store(config),
        workflow_engine=StepFunctionsWorkflowEngine(region=config.region),
        config=config,
        telemetry=_build_telemetry(config),
        page_metadata=TextractJobService(config),
    )
    report = listener.handle_sns_event(event)
    LOGGER.info("Processed completion notifications: %s", json.dumps(report.to_dict()))
    return report.to_dict()


def _load_config() -> OrchestratorConfig:
    config = OrchestratorConfig.from_env().validate()
    logging.getLogger().setLevel(config.log_level)
    return config


def _build_store(config: OrchestratorConfig) -> DynamoDBCorrelationStore:
    if not config.token_table_name:
        raise ConfigurationError("TOKEN_STORE_DDB must be configured")
    return DynamoDBCorrelationStore(config.token_table_name, region=config.region)


def _build_telemetry(config: OrchestratorConfig) -> OperationalTelemetry:
    emitter = None
    if config.enable_cloudwatch_metrics:
        emitter = CloudWatchMetricsEmitter(
            namespace=config.metric_namespace,
            region=config.region,
            textract_api=config.textract_api.value,
        )
    return OperationalTelemetry(config.textract_api.value, emitter)


def _time_budget(context: Optional[Any]) -> Optional[float]:
    if context is None or not hasattr(context, "get_remaining_time_in_millis"):
        return None
    return max(context.get_remaining_time_in_millis() / 1000.0 - _TIME_BUDGET_MARGIN_SECONDS, 0.0)


def _send_failure(engine: StepFunctionsWorkflowEngine, token: str, error: str, cause: str) -> None:
    try:
        deliver(engine, ResumeSignal.failure(token, error, cause))
    except ResumeRejected as exc:
        LOGGER.warning("Caller could not be resumed: %s", exc)
