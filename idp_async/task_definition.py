"""Amazon States Language rendering for the Textract job task and its state machine."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Union

from .config import OrchestratorConfig
from .contracts import IntegrationMode
from .errors import ConfigurationError
from .orchestrator import PARENT_EXECUTION_KEY

TASK_TOKEN_PATH = "$$.Task.Token"
EXECUTION_ID_PATH = "$$.Execution.Id"

SUPPORTED_MODES = (
    IntegrationMode.FIRE_AND_FORGET,
    IntegrationMode.SYNCHRONOUS_SUBWORKFLOW,
    IntegrationMode.CALLBACK,
)

# https://docs.aws.amazon.com/step-functions/latest/dg/connect-to-resource.html
_RESOURCE_ARN_SUFFIX = {
    IntegrationMode.FIRE_AND_FORGET: "",
    IntegrationMode.SYNCHRONOUS_SUBWORKFLOW: ".sync",
    IntegrationMode.CALLBACK: ".waitForTaskToken",
}


def validate_mode_supported(mode: IntegrationMode, supported: Iterable[IntegrationMode] = SUPPORTED_MODES) -> None:
    supported = tuple(supported)
    if mode not in supported:
        names = ", ".join(item.value for item in supported)
        raise ConfigurationError(f"Unsupported integration mode. Supported: {names}. Received: {mode.value}")


def integration_resource_arn(
    service: str,
    api: str,
    mode: Optional[IntegrationMode] = None,
    *,
    partition: str = "aws",
) -> str:
    if not service or not api:
        raise ConfigurationError("Both 'service' and 'api' must be provided to build the resource ARN.")
    suffix = _RESOURCE_ARN_SUFFIX[mode] if mode is not None else ""
    return f"arn:{partition}:states:::{service}:{api}{suffix}"


def default_callback_input() -> Dict[str, Any]:
    return {
        "Token.$": TASK_TOKEN_PATH,
        "ExecutionId.$": EXECUTION_ID_PATH,
        "Payload.$": "$",
    }


def contains_task_token(value: Any) -> bool:
    if isinstance(value, dict):
        return any(contains_task_token(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_task_token(item) for item in value)
    return isinstance(value, str) and value.startswith(TASK_TOKEN_PATH)


def render_task_state(
    config: OrchestratorConfig,
    state_machine_arn: str,
    *,
    execution_input: Union[Dict[str, Any], str, None] = None,
    name: Optional[str] = None,
    result_path: Optional[str] = None,
    partition: str = "aws",
) -> Dict[str, Any]:
    """Render the parent workflow's task that starts the Textract job state machine.

    ``execution_input`` is either an object (keys ending in ``.$`` are JSON paths)
    or a single JSON path string. The nested execution's output is requested as
    JSON (``:2``) when the parent waits for it synchronously.
    """

    mode = config.integration_mode
    validate_mode_supported(mode)
    if execution_input is None and mode is IntegrationMode.CALLBACK:
        execution_input = default_callback_input()

    if mode is IntegrationMode.CALLBACK and not contains_task_token(execution_input):
        raise ConfigurationError("Task token is required in the input for callback. Use $$.Task.Token to set the token.")
    if config.associate_with_parent and isinstance(execution_input, str):
        raise ConfigurationError(
            "Could not enable 'associate_with_parent' because the input is taken directly from a JSON path. "
            "Provide the input as an object instead."
        )

    parameters: Dict[str, Any] = {"StateMachineArn": state_machine_arn}
    if config.associate_with_parent:
        parameters["Input"] = {**(execution_input or {}), f"{PARENT_EXECUTION_KEY}.$": EXECUTION_ID_PATH}
    elif isinstance(execution_input, dict):
        parameters["Input"] = dict(execution_input)
    else:
        parameters["Input.$"] = execution_input or "$"
    if name:
        parameters["Name"] = name

    suffix = ":2" if mode is IntegrationMode.SYNCHRONOUS_SUBWORKFLOW else ""
    state: Dict[str, Any] = {
        "Type": "Task",
        "Resource": integration_resource_arn("states", "startExecution", mode, partition=partition) + suffix,
        "Parameters": parameters,
    }
    if mode is not IntegrationMode.FIRE_AND_FORGET:
        state["TimeoutSeconds"] = config.timeout_seconds
    if result_path:
        state["ResultPath"] = result_path
    return state


def render_job_state_machine(
    config: OrchestratorConfig,
    dispatch_function_arn: str,
    *,
    partition: str = "aws",
) -> Dict[str, Any]:
    """State machine that runs the dispatcher Lambda with the caller's payload."""

    return {
        "Comment": f"Textract {config.textract_api.value} asynchronous job dispatch",
        "StartAt": "TextractAsyncCallTask",
        "TimeoutSeconds": config.timeout_seconds,
        "States": {
            "TextractAsyncCallTask": {
                "Type": "Task",
                "Resource": integration_resource_arn("lambda", "invoke", partition=partition),
                "Parameters": {"FunctionName": dispatch_function_arn, "Payload.$": "$"},
                "OutputPath": "$.Payload",
                "End": True,
            }
        },
    }


__all__ = [
    "SUPPORTED_MODES",
    "contains_task_token",
    "default_callback_input",
    "integration_resource_arn",
    "render_job_state_machine",
    "render_task_state",
    "validate_mode_supported",
]
