"""Temporal activities for durable field transitions.

The collaborators the activities need (rule registry, record store,
automation source and queue) are module-level singletons injected before the
Temporal worker starts. The activities are module-level functions, so
workflows call them with workflow.execute_activity.

An activity that runs before init_collaborators() raises ApplicationError
with non_retryable=True. It would fail the same way until the worker is
reconfigured.

Usage:
    from loan_transitions.activities import init_collaborators

    # Before starting the Temporal worker:
    init_collaborators(RuleRegistry.default(), store, automations, queue)

    # In a workflow:
    outcome = await workflow.execute_activity(
        validate_transition,
        args=[transition, False, "alice"],
        start_to_close_timeout=timedelta(seconds=10),
    )
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from temporalio import activity
from temporalio.exceptions import ApplicationError

from loan_transitions.coordinator import CoordinatorSettings
from loan_transitions.dispatcher import AutomationDispatcher, DispatchResult
from loan_transitions.interfaces import (
    AutomationQueue,
    AutomationSource,
    PersistenceWriteError,
    RecordStore,
)
from loan_transitions.matcher import AutomationMatcher
from loan_transitions.registry import RuleRegistry
from loan_transitions.types import AutomationDefinition, FieldTransition, ValidationOutcome
from loan_transitions.validation import AsyncValidator

logger = logging.getLogger(__name__)


# ─── Module-Level Singleton ───────────────────────────────────────────────────


@dataclass(frozen=True)
class _Collaborators:
    registry: RuleRegistry
    store: RecordStore
    automations: AutomationSource
    queue: AutomationQueue
    settings: CoordinatorSettings


_COLLABORATORS: _Collaborators | None = None

_UNINITIALIZED_MSG = (
    "Transition collaborators not initialized: call init_collaborators() "
    "before starting the worker."
)


def init_collaborators(
    registry: RuleRegistry,
    store: RecordStore,
    automations: AutomationSource,
    queue: AutomationQueue,
    settings: CoordinatorSettings | None = None,
) -> None:
    """Inject the collaborators for this worker process.

    Replaces any previously injected set (safe to call repeatedly in tests).
    """
    global _COLLABORATORS
    _COLLABORATORS = _Collaborators(
        registry=registry,
        store=store,
        automations=automations,
        queue=queue,
        settings=settings if settings is not None else CoordinatorSettings(),
    )


def reset_collaborators() -> None:
    global _COLLABORATORS
    _COLLABORATORS = None


def _collaborators() -> _Collaborators:
    if _COLLABORATORS is None:
        raise ApplicationError(_UNINITIALIZED_MSG, non_retryable=True)
    return _COLLABORATORS


# ─── Temporal Activities ──────────────────────────────────────────────────────


@activity.defn
async def validate_transition(
    transition: FieldTransition, bypass: bool, actor: str
) -> ValidationOutcome:
    """Read the record snapshot and evaluate the transition's rule.

    When bypass is set and the matching rule is bypassable, the predicate is
    skipped and the outcome comes back with bypassed=True. Asynchronous checks
    that cannot run fail open (outcome.warnings is non-empty).

    Raises:
        ApplicationError: (non_retryable=True) if collaborators are not
            initialized or the record does not exist.
    """
    c = _collaborators()
    rule = c.registry.lookup(transition.field, transition.to_value)
    if bypass and rule is not None and rule.bypassable:
        logger.info(
            "Rule bypassed: record=%s %s=%r actor=%s",
            transition.record_id, transition.field, transition.to_value, actor,
        )
        return ValidationOutcome(is_valid=True, rule=rule, bypassed=True)

    try:
        snapshot = await asyncio.wait_for(
            c.store.read_snapshot(transition.record_id),
            timeout=c.settings.check_timeout,
        )
    except KeyError:
        raise ApplicationError(
            f"record {transition.record_id!r} not found",
            type="RecordNotFound",
            non_retryable=True,
        )
    validator = AsyncValidator(c.registry, c.store, timeout=c.settings.check_timeout)
    return await validator.validate(transition, snapshot)


@activity.defn
async def write_field(transition: FieldTransition, actor: str) -> str | None:
    """Persist transition.to_value and return the previous value.

    Raises:
        ApplicationError: (non_retryable=True, type="PersistenceWriteError")
            if the store rejects the write.
    """
    c = _collaborators()
    try:
        return await asyncio.wait_for(
            c.store.write_field(
                transition.record_id, transition.field, transition.to_value, actor=actor
            ),
            timeout=c.settings.write_timeout,
        )
    except PersistenceWriteError as e:
        logger.error(
            "Field write failed: record=%s %s=%r error=%r",
            transition.record_id, transition.field, transition.to_value, e,
        )
        raise ApplicationError(str(e), type="PersistenceWriteError", non_retryable=True)


@activity.defn
async def match_automations(field: str, new_value: str) -> list[AutomationDefinition]:
    """Active automations triggered by field=new_value.

    A failed read of the active set is logged and treated as no matches.
    """
    c = _collaborators()
    try:
        matcher = await asyncio.wait_for(
            AutomationMatcher.from_source(c.automations),
            timeout=c.settings.check_timeout,
        )
    except Exception as e:  # noqa: BLE001
        logger.warning("Active automation read failed for %s=%r: %r", field, new_value, e)
        return []
    return list(matcher.match(field, new_value))


@activity.defn
async def enqueue_automations(
    automations: list[AutomationDefinition], transition: FieldTransition, actor: str
) -> DispatchResult:
    """Create one PENDING queue entry per automation (idempotent per attempt)."""
    c = _collaborators()
    dispatcher = AutomationDispatcher(c.queue, timeout=c.settings.queue_timeout)
    return await dispatcher.dispatch(automations, transition, triggered_by=actor)


ALL_ACTIVITIES = [validate_transition, write_field, match_automations, enqueue_automations]
