#!/usr/bin/env python3
"""Temporal worker for loan field transitions.

Connects to a Temporal server, registers TransitionWorkflow and its
activities, and runs until interrupted.

Configuration (CLI args take precedence over env vars):
    --namespace       Temporal namespace  (env: TEMPORAL_NAMESPACE,  default: "default")
    --task-queue      Temporal task queue (env: TEMPORAL_TASK_QUEUE, default: "loan-transitions")
    --server-address  Temporal server     (env: TEMPORAL_ADDRESS,    default: "localhost:7233")
    --rules           YAML rule catalogue (env: LOAN_TRANSITIONS_RULES, default: built-in)
    --check-timeout   Async check timeout in seconds
                      (env: LOAN_TRANSITIONS_CHECK_TIMEOUT, default: 5.0)

Activities registered:
    validate_transition  — snapshot read + rule evaluation (fail-open async checks)
    write_field          — persist the new field value
    match_automations    — active automations for the change
    enqueue_automations  — idempotent PENDING queue entries

Workflows registered:
    TransitionWorkflow   — one confirmation attempt per (record, field)

Usage:
    bin/worker.py                                        # defaults + env vars
    bin/worker.py --rules config/rules.yaml              # custom rule catalogue
    TEMPORAL_NAMESPACE=prod bin/worker.py                # env var override
"""

import argparse
import asyncio
import dataclasses
import logging
import os

from temporalio.client import Client
from temporalio.worker import Worker

from loan_transitions.activities import ALL_ACTIVITIES, init_collaborators
from loan_transitions.coordinator import CoordinatorSettings
from loan_transitions.registry import RuleRegistry
from loan_transitions.stores import (
    InMemoryAutomationQueue,
    InMemoryAutomationSource,
    InMemoryRecordStore,
)
from loan_transitions.workflow import TransitionWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments with environment variable fallbacks.

    Args:
        argv: Argument list to parse. If None, reads from sys.argv[1:].

    Returns:
        Parsed namespace with .namespace, .task_queue, .server_address,
        .rules and .check_timeout.
    """
    parser = argparse.ArgumentParser(
        description="Temporal worker for loan field transitions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Environment variables:\n"
            "  TEMPORAL_NAMESPACE               Temporal namespace (default: 'default')\n"
            "  TEMPORAL_TASK_QUEUE              Task queue name   (default: 'loan-transitions')\n"
            "  TEMPORAL_ADDRESS                 Server address    (default: 'localhost:7233')\n"
            "  LOAN_TRANSITIONS_RULES           YAML rule catalogue (default: built-in)\n"
            "  LOAN_TRANSITIONS_CHECK_TIMEOUT   Async check timeout (default: 5.0)\n"
        ),
    )
    parser.add_argument(
        "--namespace",
        default=os.environ.get("TEMPORAL_NAMESPACE", "default"),
        metavar="NS",
        help="Temporal namespace (env: TEMPORAL_NAMESPACE, default: 'default')",
    )
    parser.add_argument(
        "--task-queue",
        default=os.environ.get("TEMPORAL_TASK_QUEUE", "loan-transitions"),
        metavar="QUEUE",
        help="Temporal task queue name (env: TEMPORAL_TASK_QUEUE, default: 'loan-transitions')",
    )
    parser.add_argument(
        "--server-address",
        default=os.environ.get("TEMPORAL_ADDRESS", "localhost:7233"),
        metavar="ADDR",
        help="Temporal server address (env: TEMPORAL_ADDRESS, default: 'localhost:7233')",
    )
    parser.add_argument(
        "--rules",
        default=os.environ.get("LOAN_TRANSITIONS_RULES") or None,
        metavar="PATH",
        help="YAML rule catalogue (env: LOAN_TRANSITIONS_RULES, default: built-in rules)",
    )
    parser.add_argument(
        "--check-timeout",
        type=float,
        default=float(os.environ.get("LOAN_TRANSITIONS_CHECK_TIMEOUT", "5.0")),
        metavar="SECONDS",
        help="Timeout for async precondition checks (env: LOAN_TRANSITIONS_CHECK_TIMEOUT, default: 5.0)",
    )
    return parser.parse_args(argv)


def load_registry(rules_path: str | None) -> RuleRegistry:
    """Built-in catalogue when rules_path is None, otherwise the YAML file."""
    if rules_path is None:
        return RuleRegistry.default()
    registry = RuleRegistry.from_yaml(rules_path)
    logger.info("Loaded %d rule(s) from %s", len(registry), rules_path)
    return registry


async def run_worker(namespace: str, task_queue: str, server_address: str) -> None:
    """Connect to Temporal and run the TransitionWorkflow worker.

    Args:
        namespace:      Temporal namespace to connect to.
        task_queue:     Task queue name to listen on.
        server_address: Temporal server address (host:port).
    """
    client = await Client.connect(server_address, namespace=namespace)

    async with Worker(
        client,
        task_queue=task_queue,
        workflows=[TransitionWorkflow],
        activities=ALL_ACTIVITIES,
    ):
        logger.info(
            "Worker running: namespace=%r task_queue=%r server=%r",
            namespace,
            task_queue,
            server_address,
        )
        # Block until SIGINT/SIGTERM.
        await asyncio.Event().wait()


async def main() -> None:
    """Parse args, inject collaborators, and start the worker."""
    args = parse_args()

    settings = dataclasses.replace(CoordinatorSettings.from_env(), check_timeout=args.check_timeout)
    # In-memory collaborators are used for development; production deployments
    # inject stores backed by the loan database.
    init_collaborators(
        load_registry(args.rules),
        InMemoryRecordStore(),
        InMemoryAutomationSource(),
        InMemoryAutomationQueue(),
        settings,
    )
    logger.info("Collaborators initialized (in-memory stores, check_timeout=%.1fs).", settings.check_timeout)

    await run_worker(
        namespace=args.namespace,
        task_queue=args.task_queue,
        server_address=args.server_address,
    )


if __name__ == "__main__":
    asyncio.run(main())
