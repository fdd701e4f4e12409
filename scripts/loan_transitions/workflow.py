"""Temporal workflow wrapper for one field transition attempt.

Wraps ConfirmationStateMachine with durable Temporal execution. Every I/O step
(snapshot read and validation, field write, automation lookup, queue inserts)
runs as an activity; the workflow only advances the state machine and waits
for the caller's send/skip decision via a signal.

Start one workflow per attempt with workflow id
transition_workflow_id(record_id, field). Temporal refuses a second running
workflow with the same id, which makes proposals single-flight per
(record, field) across worker processes.

Design rules:
- Workflow code MUST be deterministic: no I/O, no random, no datetime.now().
- Use workflow.now() for step timestamps and workflow.uuid4() for attempt ids.

Key types (all frozen dataclasses):
    TransitionInput          — workflow run() input
    TransitionWorkflowResult — workflow run() return value
    DecisionSignal           — resolve_decision signal payload

Search attribute keys:
    SA_RECORD_ID — keyword key for the record being changed
    SA_FIELD     — keyword key for the field being changed
    SA_PHASE     — keyword key for the current CoordinatorPhase
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy, SearchAttributeKey
from temporalio.exceptions import ActivityError

from loan_transitions.activities import (
    enqueue_automations,
    match_automations,
    validate_transition,
    write_field,
)
from loan_transitions.coordinator import OFFERED_RESOLUTIONS, TransitionOutcome
from loan_transitions.state_machine import ConfirmationState, ConfirmationStateMachine
from loan_transitions.types import (
    CoordinatorPhase,
    FieldTransition,
    Resolution,
    field_label,
)

# ─── Search Attribute Keys ────────────────────────────────────────────────────

SA_RECORD_ID: SearchAttributeKey = SearchAttributeKey.for_keyword("LoanRecordId")
SA_FIELD: SearchAttributeKey = SearchAttributeKey.for_keyword("LoanField")
SA_PHASE: SearchAttributeKey = SearchAttributeKey.for_keyword("LoanTransitionPhase")

_ACTIVITY_TIMEOUT = timedelta(seconds=10)
_RETRY = RetryPolicy(maximum_attempts=3)


def transition_workflow_id(record_id: str, field_name: str) -> str:
    return f"transition-{record_id}-{field_name}"


# ─── Signal / Result Types ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransitionInput:
    """Input for TransitionWorkflow.run().

    bypass requests an override of a bypassable rule; it is ignored for rules
    that are not bypassable.
    """

    record_id: str
    field: str
    new_value: str
    actor: str
    bypass: bool = False


@dataclass(frozen=True)
class DecisionSignal:
    """Signal payload for TransitionWorkflow.resolve_decision()."""

    resolution: Resolution
    actor: str


@dataclass(frozen=True)
class TransitionWorkflowResult:
    """Return value of TransitionWorkflow.run().

    queue_entry_ids lists the queue entries created (or found) for a
    SEND_AND_APPLY decision; queue_failures lists automation ids whose insert
    failed. The field write is committed whenever outcome is APPLIED.
    """

    outcome: TransitionOutcome
    record_id: str
    field: str
    field_label: str
    attempted_value: str
    final_phase: CoordinatorPhase
    message: str | None = None
    action_label: str | None = None
    missing_fields: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resolution: Resolution | None = None
    queue_entry_ids: list[str] = field(default_factory=list)
    queue_failures: list[str] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    step_count: int = 0


# ─── Workflow ─────────────────────────────────────────────────────────────────


@workflow.defn
class TransitionWorkflow:
    """Durable confirmation protocol for one (record, field) transition.

    Lifecycle:
        1. VALIDATING: validate_transition activity (bypass honoured only for
           bypassable rules).
        2. BLOCKED: run() returns outcome BLOCKED with the rule's message and
           remediation. A re-attempt is a new workflow run.
        3. APPLYING: write_field activity; a failed write ends in FAILED.
        4. match_automations activity; no matches ends in DONE (APPLIED). A
           failed lookup or queueing activity after the write is recorded as
           a warning and still ends in DONE (APPLIED).
        5. DISPATCHING -> AWAITING_DECISION: waits for resolve_decision.
           CANCEL is rejected (the write committed) and the wait continues.
           APPLY_ONLY completes; SEND_AND_APPLY runs enqueue_automations.

    Signals:
        resolve_decision(DecisionSignal)

    Queries:
        current_state() -> ConfirmationState
        pending_resolutions() -> list[Resolution]
        result() -> TransitionWorkflowResult | None
    """

    def __init__(self) -> None:
        self._decisions: list[DecisionSignal] = []
        self._sm: ConfirmationStateMachine | None = None
        self._result: TransitionWorkflowResult | None = None

    # ── Run ───────────────────────────────────────────────────────────────────

    @workflow.run
    async def run(self, input: TransitionInput) -> TransitionWorkflowResult:
        self._sm = ConfirmationStateMachine(
            workflow.uuid4().hex, input.record_id, input.field, input.new_value
        )
        workflow.upsert_search_attributes(
            [
                SA_RECORD_ID.value_set(input.record_id),
                SA_FIELD.value_set(input.field),
            ]
        )
        self._advance(CoordinatorPhase.VALIDATING, input.actor, "proposed")

        transition = FieldTransition(
            record_id=input.record_id,
            field=input.field,
            to_value=input.new_value,
            attempt_id=self._sm.state.attempt_id,
        )

        try:
            outcome = await workflow.execute_activity(
                validate_transition,
                args=[transition, input.bypass, input.actor],
                start_to_close_timeout=_ACTIVITY_TIMEOUT,
                retry_policy=_RETRY,
            )
        except ActivityError as e:
            return self._fail(input, _cause_message(e), "validation")

        if outcome.bypassed and outcome.rule is not None:
            self._sm.record_bypass(outcome.rule, input.actor)
        else:
            self._sm.record_outcome(outcome)
        for warning in outcome.warnings:
            workflow.logger.warning("Transition permitted with warning: %s", warning)

        if not outcome.is_valid:
            self._advance(CoordinatorPhase.BLOCKED, input.actor, outcome.reason or "rule violated")
            return self._finish(input, TransitionOutcome.BLOCKED, message=outcome.reason)

        self._advance(
            CoordinatorPhase.APPLYING,
            input.actor,
            f"bypassed by {input.actor}" if outcome.bypassed else "validation passed",
        )
        try:
            previous = await workflow.execute_activity(
                write_field,
                args=[transition, input.actor],
                start_to_close_timeout=_ACTIVITY_TIMEOUT,
                retry_policy=_RETRY,
            )
        except ActivityError as e:
            return self._fail(input, _cause_message(e), "persistence_write")
        self._sm.record_write(previous)

        try:
            matches = await workflow.execute_activity(
                match_automations,
                args=[input.field, input.new_value],
                start_to_close_timeout=_ACTIVITY_TIMEOUT,
                retry_policy=_RETRY,
            )
        except ActivityError as e:
            # The write committed; report it applied with nothing to offer.
            workflow.logger.warning("Automation lookup failed after commit: %s", _cause_message(e))
            self._sm.record_warning(f"automations not checked: {_cause_message(e)}")
            matches = []
        self._sm.record_matches(tuple(matches))
        if not matches:
            self._advance(CoordinatorPhase.DONE, input.actor, "applied; no automations")
            return self._finish(input, TransitionOutcome.APPLIED)

        self._advance(
            CoordinatorPhase.DISPATCHING, input.actor, f"{len(matches)} automation(s) matched"
        )
        self._advance(
            CoordinatorPhase.AWAITING_DECISION, input.actor, "awaiting send/skip decision"
        )

        while True:
            await workflow.wait_condition(lambda: bool(self._decisions))
            decision = self._decisions.pop(0)
            if decision.resolution in OFFERED_RESOLUTIONS:
                break
            # CANCEL after commit: record the rejection and keep waiting.
            violations = self._sm.validate_advance(CoordinatorPhase.CANCELLED)
            self._sm.record_failed_step(
                CoordinatorPhase.CANCELLED,
                "; ".join(violations) or "cancellation is not supported",
                triggered_by=decision.actor,
                timestamp=workflow.now(),
            )

        self._sm.record_resolution(decision.resolution)
        if decision.resolution == Resolution.APPLY_ONLY:
            self._advance(CoordinatorPhase.DONE, decision.actor, "automations skipped")
            return self._finish(input, TransitionOutcome.APPLIED)

        dispatch_transition = FieldTransition(
            record_id=input.record_id,
            field=input.field,
            to_value=input.new_value,
            from_value=previous,
            attempt_id=self._sm.state.attempt_id,
        )
        try:
            dispatched = await workflow.execute_activity(
                enqueue_automations,
                args=[list(matches), dispatch_transition, decision.actor],
                start_to_close_timeout=_ACTIVITY_TIMEOUT,
                retry_policy=_RETRY,
            )
        except ActivityError as e:
            error = _cause_message(e)
            workflow.logger.warning("Automation queueing failed after commit: %s", error)
            self._sm.record_warning(f"automations not queued: {error}")
            self._advance(CoordinatorPhase.DONE, decision.actor, "automations failed")
            return self._finish(
                input,
                TransitionOutcome.APPLIED,
                queue_failures=[a.id for a in matches],
                error=error,
                error_kind="automation_queue",
            )
        self._advance(
            CoordinatorPhase.DONE, decision.actor, f"automations {dispatched.outcome.value}"
        )
        return self._finish(
            input,
            TransitionOutcome.APPLIED,
            queue_entry_ids=[e.id for e in dispatched.entries],
            queue_failures=[f.automation_id for f in dispatched.failures],
        )

    # ── Signals ───────────────────────────────────────────────────────────────

    @workflow.signal
    def resolve_decision(self, signal: DecisionSignal) -> None:
        """Signal: answer the send/skip decision. Queued and handled in run()."""
        self._decisions.append(signal)

    # ── Queries ───────────────────────────────────────────────────────────────

    @workflow.query
    def current_state(self) -> ConfirmationState:
        if self._sm is None:
            raise RuntimeError("Workflow not yet initialized: run() has not started.")
        return self._sm.state

    @workflow.query
    def pending_resolutions(self) -> list[Resolution]:
        if self._sm is None or self._sm.phase != CoordinatorPhase.AWAITING_DECISION:
            return []
        return list(OFFERED_RESOLUTIONS)

    @workflow.query
    def result(self) -> TransitionWorkflowResult | None:
        return self._result

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _advance(self, to_phase: CoordinatorPhase, actor: str, reason: str) -> None:
        assert self._sm is not None
        self._sm.advance(to_phase, triggered_by=actor, reason=reason, timestamp=workflow.now())
        workflow.upsert_search_attributes([SA_PHASE.value_set(to_phase.value)])

    def _fail(
        self, input: TransitionInput, error: str, error_kind: str
    ) -> TransitionWorkflowResult:
        assert self._sm is not None
        workflow.logger.error(
            "Transition failed: record=%s %s=%r kind=%s error=%s",
            input.record_id, input.field, input.new_value, error_kind, error,
        )
        self._advance(CoordinatorPhase.FAILED, input.actor, error)
        self._sm.record_error(error)
        return self._finish(
            input, TransitionOutcome.FAILED, error=error, error_kind=error_kind
        )

    def _finish(
        self,
        input: TransitionInput,
        outcome: TransitionOutcome,
        *,
        message: str | None = None,
        queue_entry_ids: list[str] | None = None,
        queue_failures: list[str] | None = None,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> TransitionWorkflowResult:
        assert self._sm is not None
        state = self._sm.state
        self._result = TransitionWorkflowResult(
            outcome=outcome,
            record_id=input.record_id,
            field=input.field,
            field_label=field_label(input.field),
            attempted_value=input.new_value,
            final_phase=state.phase,
            message=message,
            action_label=state.rule.action_label if state.rule is not None else None,
            missing_fields=list(state.missing_fields),
            warnings=list(state.warnings),
            resolution=state.resolution,
            queue_entry_ids=queue_entry_ids or [],
            queue_failures=queue_failures or [],
            error=error,
            error_kind=error_kind,
            step_count=len(state.step_history),
        )
        return self._result


def _cause_message(error: ActivityError) -> str:
    cause = error.cause
    return str(cause) if cause is not None else str(error)
