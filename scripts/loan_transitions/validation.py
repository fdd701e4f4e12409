"""Synchronous and asynchronous transition validators.

evaluate(rule, snapshot) is the pure predicate contract shared by both
validators. A failed predicate is an expected outcome (is_valid=False), never
an exception.

AsyncValidator extends the same contract to rules that carry an AsyncCheck:
the related-entity read goes through the RecordStore collaborator under a
timeout. Failure policy:
    - rule violation                      -> is_valid=False (fail-closed)
    - infrastructure error or timeout     -> is_valid=True plus a warning (fail-open)
"""

from __future__ import annotations

import asyncio
import logging
from typing import assert_never

from loan_transitions.interfaces import CheckExecutionError, RecordStore
from loan_transitions.registry import RuleRegistry
from loan_transitions.types import (
    FieldTransition,
    RecordSnapshot,
    StageRule,
    StatusChangeRule,
    TransitionRule,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)

# Errors treated as "the check could not run" rather than "the check failed".
_INFRASTRUCTURE_ERRORS: tuple[type[BaseException], ...] = (
    CheckExecutionError,
    TimeoutError,
    OSError,
)


# ─── Pure Predicate ───────────────────────────────────────────────────────────


def is_waived(rule: TransitionRule, snapshot: RecordSnapshot) -> bool:
    """True when a stage rule's waiver applies to the snapshot."""
    if isinstance(rule, StageRule):
        return rule.waived_by is not None and rule.waived_by.applies_to(snapshot)
    if isinstance(rule, StatusChangeRule):
        return False
    assert_never(rule)


def evaluate(rule: TransitionRule | None, snapshot: RecordSnapshot) -> ValidationOutcome:
    """Evaluate a rule's snapshot predicate.

    Returns is_valid=True when there is no rule, the rule is waived, or every
    required field is populated. Otherwise returns the rule, its message as the
    reason, and the missing fields in rule order.
    """
    if rule is None:
        return ValidationOutcome(is_valid=True)
    if is_waived(rule, snapshot):
        return ValidationOutcome(is_valid=True, rule=rule)

    missing = tuple(name for name in rule.requires if not snapshot.is_populated(name))
    if missing:
        return ValidationOutcome(
            is_valid=False,
            rule=rule,
            reason=rule.message,
            missing_fields=missing,
        )
    return ValidationOutcome(is_valid=True, rule=rule)


def evaluate_related(
    rule: TransitionRule, documents: dict[str, bool] | None
) -> ValidationOutcome:
    """Evaluate a rule's async check against related-document presence.

    documents is None when the record links no related entity; that fails
    closed, as does any required document that is absent or falsy.
    """
    check = rule.async_check
    if check is None:
        return ValidationOutcome(is_valid=True, rule=rule)
    if documents is None:
        return ValidationOutcome(
            is_valid=False,
            rule=rule,
            reason=f"{rule.message} (no {check.relation} linked)",
            missing_fields=(check.link_field,),
        )
    missing = tuple(doc for doc in check.required_documents if not documents.get(doc))
    if missing:
        return ValidationOutcome(
            is_valid=False,
            rule=rule,
            reason=rule.message,
            missing_fields=missing,
        )
    return ValidationOutcome(is_valid=True, rule=rule)


# ─── Validators ───────────────────────────────────────────────────────────────


class SyncValidator:
    """Registry-backed validator with no I/O."""

    def __init__(self, registry: RuleRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> RuleRegistry:
        return self._registry

    def validate(self, transition: FieldTransition, snapshot: RecordSnapshot) -> ValidationOutcome:
        return evaluate(self._registry.lookup(transition.field, transition.to_value), snapshot)


class AsyncValidator:
    """Validator for rules whose predicate needs an external read.

    Runs the synchronous predicate first; the related-entity read only happens
    when the snapshot predicate already holds and the rule carries an
    AsyncCheck. Every read is bounded by timeout (seconds).

    Usage:
        validator = AsyncValidator(RuleRegistry.default(), store, timeout=5.0)
        outcome = await validator.validate(transition, snapshot)
        if outcome.warnings:
            ...  # permitted, but the check could not run
    """

    def __init__(self, registry: RuleRegistry, store: RecordStore, *, timeout: float = 5.0) -> None:
        self._sync = SyncValidator(registry)
        self._store = store
        self._timeout = timeout

    @property
    def registry(self) -> RuleRegistry:
        return self._sync.registry

    async def validate(
        self, transition: FieldTransition, snapshot: RecordSnapshot
    ) -> ValidationOutcome:
        rule = self.registry.lookup(transition.field, transition.to_value)
        outcome = evaluate(rule, snapshot)
        if rule is None or not outcome.is_valid or rule.async_check is None:
            return outcome
        if is_waived(rule, snapshot):
            return outcome

        try:
            documents = await asyncio.wait_for(
                self._store.read_related_documents(snapshot.record_id, rule.async_check),
                timeout=self._timeout,
            )
        except _INFRASTRUCTURE_ERRORS as e:
            warning = (
                f"{rule.async_check.relation} document check for "
                f"{transition.field}={transition.to_value!r} could not run "
                f"({type(e).__name__}: {e}); change permitted"
            )
            logger.warning(
                "Async check failed open: record=%s field=%s value=%r error=%r",
                transition.record_id,
                transition.field,
                transition.to_value,
                e,
            )
            return ValidationOutcome(is_valid=True, rule=rule, warnings=(warning,))

        return evaluate_related(rule, documents)
