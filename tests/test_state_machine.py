"""Tests for loan_transitions.state_machine — ConfirmationStateMachine.

BDD Acceptance Criteria:
    AC1: Given a blocked attempt, when advancing to APPLYING, then the step is
         refused. No field write may follow a failed validation.
    AC2: Given a bypassable rule, when bypassed by an actor, then the attempt is
         cleared and the actor is recorded; non-bypassable rules refuse.
    AC3: Given a committed write, when cancelling, then the step is refused.
    AC4: Given matched automations, when completing from APPLYING, then the
         step is refused until a send/skip decision is recorded.
    AC5: Given any state, when serialized with to_dict()/from_dict(), then the
         state round-trips.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from conftest import ACTOR, _drive_to, _make_automation
from loan_transitions.state_machine import (
    ConfirmationState,
    ConfirmationStateMachine,
    StepRecord,
    TransitionError,
)
from loan_transitions.types import (
    STAGE_RULES,
    CoordinatorPhase,
    Resolution,
    StatusChangeRule,
    ValidationOutcome,
)

BYPASSABLE = StatusChangeRule(
    field="loan_status",
    target_value="CTC",
    message="Upload the CTC letter",
    requires=("ctc_file",),
    bypassable=True,
)


def _sm(value: str = "Approved") -> ConfirmationStateMachine:
    return ConfirmationStateMachine("attempt-1", "loan-1", "loan_status", value)


class TestTransitionTable:
    def test_starts_idle(self) -> None:
        sm = _sm()
        assert sm.phase == CoordinatorPhase.IDLE
        assert not sm.state.is_terminal

    def test_happy_path_records_every_step(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.DONE)
        phases = [(r.from_phase, r.to_phase) for r in sm.state.step_history]
        assert phases == [
            (CoordinatorPhase.IDLE, CoordinatorPhase.VALIDATING),
            (CoordinatorPhase.VALIDATING, CoordinatorPhase.APPLYING),
            (CoordinatorPhase.APPLYING, CoordinatorPhase.DISPATCHING),
            (CoordinatorPhase.DISPATCHING, CoordinatorPhase.AWAITING_DECISION),
            (CoordinatorPhase.AWAITING_DECISION, CoordinatorPhase.DONE),
        ]
        assert sm.state.is_terminal

    def test_unlisted_step_is_refused(self) -> None:
        sm = _sm()
        with pytest.raises(TransitionError, match="not permitted") as exc:
            sm.advance(CoordinatorPhase.DONE, triggered_by=ACTOR, reason="skip ahead")
        assert exc.value.violations
        assert sm.phase == CoordinatorPhase.IDLE

    @pytest.mark.parametrize(
        "terminal", [CoordinatorPhase.DONE, CoordinatorPhase.CANCELLED]
    )
    def test_terminal_phases_accept_nothing(self, terminal) -> None:
        sm = _sm()
        _drive_to(sm, terminal)
        for phase in CoordinatorPhase:
            assert not sm.can_advance(phase)

    def test_failed_is_terminal(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.APPLYING)
        sm.advance(CoordinatorPhase.FAILED, triggered_by=ACTOR, reason="write failed")
        sm.record_error("write failed")
        assert sm.state.is_terminal
        assert sm.state.last_error == "write failed"
        assert not sm.can_advance(CoordinatorPhase.DONE)


class TestGates:
    def test_apply_requires_cleared_outcome(self) -> None:
        sm = _sm()
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        violations = sm.validate_advance(CoordinatorPhase.APPLYING)
        assert violations and "has not passed validation" in violations[0]

    def test_blocked_attempt_cannot_apply(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.BLOCKED)
        assert not sm.can_advance(CoordinatorPhase.APPLYING)

    def test_block_requires_rule(self) -> None:
        sm = _sm()
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        assert sm.validate_advance(CoordinatorPhase.BLOCKED) == [
            "Cannot block without a violated rule."
        ]

    def test_reattempt_resets_verdict(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.BLOCKED)
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="retry")
        assert sm.state.validation_rounds == 2
        assert sm.state.cleared is False
        assert sm.state.missing_fields == ()

    def test_dispatch_requires_matches(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.APPLYING)
        sm.record_write("Processing")
        assert "Cannot dispatch with no matched automations." in sm.validate_advance(
            CoordinatorPhase.DISPATCHING
        )
        assert sm.can_advance(CoordinatorPhase.DONE)

    def test_done_from_applying_requires_no_matches(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.APPLYING)
        sm.record_write("Processing")
        sm.record_matches((_make_automation("a1"),))
        assert not sm.can_advance(CoordinatorPhase.DONE)

    def test_done_from_applying_requires_write(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.APPLYING)
        assert not sm.can_advance(CoordinatorPhase.DONE)

    def test_awaiting_decision_needs_committed_resolution(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.AWAITING_DECISION)
        assert not sm.can_advance(CoordinatorPhase.DONE)
        sm.record_resolution(Resolution.CANCEL)
        assert not sm.can_advance(CoordinatorPhase.DONE)
        sm.record_resolution(Resolution.APPLY_ONLY)
        assert sm.can_advance(CoordinatorPhase.DONE)

    def test_cancel_after_commit_is_refused(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.AWAITING_DECISION)
        violations = sm.validate_advance(CoordinatorPhase.CANCELLED)
        assert violations and "not supported" in violations[0]

    def test_write_only_recorded_while_applying(self) -> None:
        sm = _sm()
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        with pytest.raises(TransitionError):
            sm.record_write("Processing")


class TestBypass:
    def test_bypass_clears_and_attributes(self) -> None:
        sm = _sm("CTC")
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        sm.record_bypass(BYPASSABLE, "bob")
        assert sm.state.cleared
        assert sm.state.bypassed_by == "bob"
        assert sm.state.rule is BYPASSABLE
        assert sm.can_advance(CoordinatorPhase.APPLYING)

    def test_non_bypassable_rule_refuses(self) -> None:
        sm = _sm()
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        with pytest.raises(TransitionError, match="not bypassable"):
            sm.record_bypass(STAGE_RULES[0], "bob")
        assert not sm.state.cleared
        assert sm.state.bypassed_by is None


class TestFailedSteps:
    def test_failed_step_keeps_phase(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.AWAITING_DECISION)
        record = sm.record_failed_step(CoordinatorPhase.CANCELLED, "not supported", triggered_by=ACTOR)
        assert record.success is False
        assert record.reason == "FAILED: not supported"
        assert sm.phase == CoordinatorPhase.AWAITING_DECISION
        assert sm.state.last_error == "not supported"

    def test_successful_step_clears_last_error(self) -> None:
        sm = _sm()
        sm.record_failed_step(CoordinatorPhase.DONE, "nope", triggered_by=ACTOR)
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        assert sm.state.last_error is None


class TestSerialization:
    def test_round_trip_through_json(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.BLOCKED)
        sm.state.warnings.append("check skipped")
        data = json.loads(json.dumps(sm.state.to_dict()))
        assert ConfirmationState.from_dict(data) == sm.state

    def test_round_trip_with_automations_and_resolution(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.DONE)
        restored = ConfirmationState.from_dict(sm.state.to_dict())
        assert restored == sm.state
        assert restored.resolution == Resolution.SEND_AND_APPLY
        assert restored.automations[0].id == "auto-1"

    def test_stage_rule_round_trip(self) -> None:
        sm = _sm()
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
        rule = STAGE_RULES[1]
        sm.record_outcome(
            ValidationOutcome(is_valid=False, rule=rule, reason=rule.message, missing_fields=rule.requires)
        )
        restored = ConfirmationState.from_dict(sm.state.to_dict())
        assert restored.rule == rule

    def test_resume_wraps_existing_state(self) -> None:
        sm = _sm()
        _drive_to(sm, CoordinatorPhase.AWAITING_DECISION)
        resumed = ConfirmationStateMachine.resume(ConfirmationState.from_dict(sm.state.to_dict()))
        resumed.record_resolution(Resolution.APPLY_ONLY)
        resumed.advance(CoordinatorPhase.DONE, triggered_by=ACTOR, reason="skipped")
        assert resumed.phase == CoordinatorPhase.DONE

    def test_explicit_timestamp_is_used(self) -> None:
        sm = _sm()
        when = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        record = sm.advance(
            CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed", timestamp=when
        )
        assert record == StepRecord(
            from_phase=CoordinatorPhase.IDLE,
            to_phase=CoordinatorPhase.VALIDATING,
            timestamp=when,
            triggered_by=ACTOR,
            reason="proposed",
        )
