"""Command line helpers for reviewing the orchestrator's configuration-time output."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Iterable, Optional

from .access_scope import dispatcher_permissions, listener_permissions, policy_document, scoped_access_policy
from .config import OrchestratorConfig
from .contracts import IntegrationMode
from .task_definition import render_job_state_machine, render_task_state

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render policies and task definitions for Textract async jobs")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    policy = subparsers.add_parser("policy", help="Print the IAM policy document for a component")
    policy.add_argument("--mode", default=None, help="Integration mode (defaults to INTEGRATION_MODE)")
    policy.add_argument(
        "--component",
        choices=("caller", "dispatcher", "listener"),
        default="caller",
        help="Which principal the policy is for",
    )
    policy.add_argument("--state-machine-arn", help="ARN of the Textract job state machine (caller policy)")
    policy.add_argument("--table-arn", help="ARN of the token table (dispatcher/listener policies)")

    task = subparsers.add_parser("task", help="Print the Step Functions task state for the caller workflow")
    task.add_argument("--mode", default=None, help="Integration mode (defaults to INTEGRATION_MODE)")
    task.add_argument("--state-machine-arn", required=True, help="ARN of the Textract job state machine")
    task.add_argument("--name", default=None, help="Execution name for the nested execution")
    task.add_argument("--associate-with-parent", action="store_true", help="Pass the parent execution id")
    task.add_argument("--result-path", default="$.textract_result", help="ResultPath of the task state")

    machine = subparsers.add_parser("state-machine", help="Print the job state machine definition")
    machine.add_argument("--dispatch-function-arn", required=True, help="ARN of the dispatcher Lambda")
    return parser


def _load_config(mode: Optional[str], **overrides) -> OrchestratorConfig:
    config = OrchestratorConfig.from_env()
    if mode:
        config = config.with_mode(IntegrationMode.parse(mode))
    if overrides:
        config = replace(config, **overrides)
    return config.validate()


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        if args.command == "policy":
            config = _load_config(args.mode)
            if args.component == "caller":
                if not args.state_machine_arn:
                    parser.error("--state-machine-arn is required for the caller policy")
                statements = scoped_access_policy(config.integration_mode, args.state_machine_arn)
            elif args.component == "dispatcher":
                statements = dispatcher_permissions(config, args.table_arn)
            else:
                if not args.table_arn:
                    parser.error("--table-arn is required for the listener policy")
                statements = listener_permissions(config, args.table_arn)
            output = policy_document(statements)
        elif args.command == "task":
            overrides = {"associate_with_parent": True} if args.associate_with_parent else {}
            config = _load_config(args.mode, **overrides)
            output = render_task_state(
                config,
                args.state_machine_arn,
                name=args.name,
                result_path=args.result_path,
            )
        else:
            output = render_job_state_machine(_load_config(None), args.dispatch_function_arn)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
