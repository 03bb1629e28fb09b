"""Minimal IAM permission sets for each integration mode.

Everything in this module is computed once at configuration time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import OrchestratorConfig
from .contracts import IntegrationMode
from .errors import ConfigurationError

# Managed rule Step Functions uses to track ``.sync`` nested executions.
SYNC_EXECUTION_EVENTS_RULE = "StepFunctionsGetEventsForStepFunctionsExecutionRule"


@dataclass(frozen=True)
class PolicyStatement:
    actions: Tuple[str, ...]
    resources: Tuple[str, ...]
    effect: str = "Allow"

    def to_dict(self) -> Dict[str, Any]:
        return {"Effect": self.effect, "Action": list(self.actions), "Resource": list(self.resources)}


@dataclass(frozen=True)
class StateMachineArn:
    """Components of ``arn:<partition>:states:<region>:<account>:stateMachine:<name>``."""

    partition: str
    region: str
    account: str
    name: str

    @classmethod
    def parse(cls, arn: str) -> "StateMachineArn":
        parts = arn.split(":")
        if len(parts) < 7 or parts[0] != "arn" or parts[2] != "states" or parts[5] != "stateMachine":
            raise ConfigurationError(f"'{arn}' is not a Step Functions state machine ARN")
        return cls(partition=parts[1], region=parts[3], account=parts[4], name=parts[6])

    def __str__(self) -> str:
        return f"arn:{self.partition}:states:{self.region}:{self.account}:stateMachine:{self.name}"

    def executions(self) -> str:
        return f"arn:{self.partition}:states:{self.region}:{self.account}:execution:{self.name}*"

    def events_rule(self, rule_name: str = SYNC_EXECUTION_EVENTS_RULE) -> str:
        return f"arn:{self.partition}:events:{self.region}:{self.account}:rule/{rule_name}"


def scoped_access_policy(mode: IntegrationMode, state_machine_arn: str) -> List[PolicyStatement]:
    """Permissions the calling workflow needs to start the job state machine in ``mode``.

    StartExecution is restricted to the given state machine instead of ``*``. The
    synchronous mode also needs to describe/stop its own nested executions and to
    manage the events rule the engine uses to learn about their completion.
    """

    arn = StateMachineArn.parse(state_machine_arn)
    statements = [PolicyStatement(actions=("states:StartExecution",), resources=(str(arn),))]

    if mode is IntegrationMode.SYNCHRONOUS_SUBWORKFLOW:
        statements.append(
            PolicyStatement(
                actions=("states:DescribeExecution", "states:StopExecution"),
                resources=(arn.executions(),),
            )
        )
        statements.append(
            PolicyStatement(
                actions=("events:PutTargets", "events:PutRule", "events:DescribeRule"),
                resources=(arn.events_rule(),),
            )
        )
    return statements


def dispatcher_permissions(config: OrchestratorConfig, token_table_arn: Optional[str] = None) -> List[PolicyStatement]:
    bucket = config.s3_output_bucket
    statements = [
        PolicyStatement(actions=("textract:Start*", "textract:Get*"), resources=("*",)),
        PolicyStatement(
            actions=("s3:GetObject", "s3:ListBucket", "s3:PutObject"),
            resources=(f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"),
        ),
    ]
    if config.notification_topic_arn:
        statements.append(PolicyStatement(actions=("sns:Publish",), resources=(config.notification_topic_arn,)))
    if config.integration_mode is IntegrationMode.CALLBACK:
        statements.append(
            PolicyStatement(
                actions=("dynamodb:PutItem", "dynamodb:GetItem"),
                resources=(_require(token_table_arn, "token_table_arn"),),
            )
        )
        statements.append(PolicyStatement(actions=("states:SendTaskFailure",), resources=("*",)))
    return statements


def listener_permissions(config: OrchestratorConfig, token_table_arn: str) -> List[PolicyStatement]:
    prefix = config.s3_temp_output_prefix.strip("/")
    return [
        PolicyStatement(actions=("dynamodb:DeleteItem", "dynamodb:GetItem"), resources=(token_table_arn,)),
        PolicyStatement(actions=("states:SendTaskSuccess", "states:SendTaskFailure"), resources=("*",)),
        PolicyStatement(actions=("textract:Get*",), resources=("*",)),
        PolicyStatement(
            actions=("s3:Put*", "s3:List*"),
            resources=(
                f"arn:aws:s3:::{config.s3_output_bucket}",
                f"arn:aws:s3:::{config.s3_output_bucket}/{prefix}/*",
            ),
        ),
    ]


def policy_document(statements: Sequence[PolicyStatement]) -> Dict[str, Any]:
    return {"Version": "2012-10-17", "Statement": [statement.to_dict() for statement in statements]}


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise ConfigurationError(f"{name} is required for the CALLBACK integration mode")
    return value


__all__ = [
    "PolicyStatement",
    "StateMachineArn",
    "SYNC_EXECUTION_EVENTS_RULE",
    "dispatcher_permissions",
    "listener_permissions",
    "policy_document",
    "scoped_access_policy",
]
