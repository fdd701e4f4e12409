"""Confirmation protocol state machine for one field transition attempt.

Pure Python, no I/O and no Temporal dependency. Both the in-process
TransitionCoordinator and the durable TransitionWorkflow thread one
ConfirmationStateMachine through every step of an attempt:

    IDLE -> VALIDATING -> BLOCKED | APPLYING
    BLOCKED -> VALIDATING (re-attempt) | CANCELLED
    APPLYING -> DONE | DISPATCHING
    DISPATCHING -> AWAITING_DECISION -> DONE
    VALIDATING | APPLYING -> FAILED

Key types:
    ConfirmationState        — mutable, serializable runtime state of one attempt
    StepRecord               — frozen audit entry for one phase change
    TransitionError          — raised when a phase change is not permitted
    ConfirmationStateMachine — validates and records phase changes
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from loan_transitions.types import (
    ActionKind,
    AsyncCheck,
    AutomationDefinition,
    CoordinatorPhase,
    RecipientType,
    Resolution,
    RuleKind,
    StageRule,
    StatusChangeRule,
    TransitionRule,
    TriggerType,
    ValidationOutcome,
    Waiver,
)


# ─── State Types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StepRecord:
    """Immutable audit entry for one phase change of an attempt.

    success is False for a rejected phase change; the reason then carries the
    "FAILED: {error}" text for display only.
    """

    from_phase: CoordinatorPhase
    to_phase: CoordinatorPhase
    timestamp: datetime
    triggered_by: str
    reason: str
    success: bool = True


@dataclass
class ConfirmationState:
    """Mutable runtime state of one transition attempt.

    cleared is True once validation passed or a bypass was exercised; applied
    is True once the field write committed. Neither is ever reset within an
    attempt except cleared, which a re-attempt from BLOCKED recomputes.
    """

    attempt_id: str
    record_id: str
    field: str
    attempted_value: str
    phase: CoordinatorPhase = CoordinatorPhase.IDLE
    from_value: str | None = None
    rule: TransitionRule | None = None
    missing_fields: tuple[str, ...] = ()
    warnings: list[str] = field(default_factory=list)
    cleared: bool = False
    bypassed_by: str | None = None
    applied: bool = False
    automations: tuple[AutomationDefinition, ...] = ()
    resolution: Resolution | None = None
    validation_rounds: int = 0
    step_history: list[StepRecord] = field(default_factory=list)
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in _TERMINAL_PHASES

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible representation (enums as values, datetimes ISO-8601)."""
        return _jsonable(dataclasses.asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfirmationState:
        """Inverse of to_dict()."""
        return cls(
            attempt_id=data["attempt_id"],
            record_id=data["record_id"],
            field=data["field"],
            attempted_value=data["attempted_value"],
            phase=CoordinatorPhase(data["phase"]),
            from_value=data.get("from_value"),
            rule=rule_from_dict(data["rule"]) if data.get("rule") else None,
            missing_fields=tuple(data.get("missing_fields", ())),
            warnings=list(data.get("warnings", ())),
            cleared=data.get("cleared", False),
            bypassed_by=data.get("bypassed_by"),
            applied=data.get("applied", False),
            automations=tuple(
                _automation_from_dict(a) for a in data.get("automations", ())
            ),
            resolution=Resolution(data["resolution"]) if data.get("resolution") else None,
            validation_rounds=data.get("validation_rounds", 0),
            step_history=[_step_from_dict(s) for s in data.get("step_history", ())],
            last_error=data.get("last_error"),
        )


# ─── Exception ────────────────────────────────────────────────────────────────


class TransitionError(Exception):
    """Raised when a requested phase change is not permitted.

    violations is the non-empty list of human-readable reasons.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations: list[str] = violations
        super().__init__("; ".join(violations))


# ─── Transition Table ─────────────────────────────────────────────────────────

_TERMINAL_PHASES: frozenset[CoordinatorPhase] = frozenset(
    {CoordinatorPhase.DONE, CoordinatorPhase.CANCELLED, CoordinatorPhase.FAILED}
)

_ALLOWED: dict[CoordinatorPhase, frozenset[CoordinatorPhase]] = {
    CoordinatorPhase.IDLE: frozenset({CoordinatorPhase.VALIDATING}),
    CoordinatorPhase.VALIDATING: frozenset(
        {CoordinatorPhase.BLOCKED, CoordinatorPhase.APPLYING, CoordinatorPhase.FAILED}
    ),
    CoordinatorPhase.BLOCKED: frozenset(
        {CoordinatorPhase.VALIDATING, CoordinatorPhase.CANCELLED}
    ),
    CoordinatorPhase.APPLYING: frozenset(
        {CoordinatorPhase.DONE, CoordinatorPhase.DISPATCHING, CoordinatorPhase.FAILED}
    ),
    CoordinatorPhase.DISPATCHING: frozenset({CoordinatorPhase.AWAITING_DECISION}),
    CoordinatorPhase.AWAITING_DECISION: frozenset(
        {CoordinatorPhase.DONE, CoordinatorPhase.CANCELLED}
    ),
}

# Resolutions that complete an attempt after the field write committed.
_COMMITTED_RESOLUTIONS: frozenset[Resolution] = frozenset(
    {Resolution.SEND_AND_APPLY, Resolution.APPLY_ONLY}
)


# ─── State Machine ────────────────────────────────────────────────────────────


class ConfirmationStateMachine:
    """State machine for one (record, field) transition attempt.

    Gate checks on top of the transition table:
    - APPLYING requires the attempt to be cleared (valid or bypassed).
    - BLOCKED requires a violated rule.
    - DISPATCHING requires a committed write and at least one automation.
    - DONE from APPLYING requires a committed write and no automations;
      DONE from AWAITING_DECISION requires SEND_AND_APPLY or APPLY_ONLY.
    - CANCELLED is refused once the field write committed.

    Usage:
        sm = ConfirmationStateMachine("attempt-1", "loan-42", "loan_status", "AWC")
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by="alice", reason="proposed")
        sm.record_outcome(outcome)
        sm.advance(CoordinatorPhase.APPLYING, triggered_by="alice", reason="valid")
    """

    def __init__(
        self,
        attempt_id: str,
        record_id: str,
        field: str,
        attempted_value: str,
        *,
        from_value: str | None = None,
    ) -> None:
        self._state = ConfirmationState(
            attempt_id=attempt_id,
            record_id=record_id,
            field=field,
            attempted_value=attempted_value,
            from_value=from_value,
        )

    @classmethod
    def resume(cls, state: ConfirmationState) -> ConfirmationStateMachine:
        """Wrap an existing (e.g. deserialized) state."""
        sm = cls.__new__(cls)
        sm._state = state
        return sm

    @property
    def state(self) -> ConfirmationState:
        """Current attempt state (mutable — do not modify directly)."""
        return self._state

    @property
    def phase(self) -> CoordinatorPhase:
        return self._state.phase

    # ── Core Methods ──────────────────────────────────────────────────────────

    def advance(
        self,
        to_phase: CoordinatorPhase,
        *,
        triggered_by: str,
        reason: str,
        timestamp: datetime | None = None,
    ) -> StepRecord:
        """Move the attempt to to_phase.

        Args:
            to_phase: Target phase.
            triggered_by: Actor or component that caused the change.
            reason: Short description recorded in the step history.
            timestamp: Explicit timestamp (pass workflow.now() from workflow
                code); defaults to datetime.now(UTC).

        Raises:
            TransitionError: If the change is not permitted.
        """
        violations = self.validate_advance(to_phase)
        if violations:
            raise TransitionError(violations)

        record = StepRecord(
            from_phase=self._state.phase,
            to_phase=to_phase,
            timestamp=timestamp if timestamp is not None else datetime.now(tz=timezone.utc),
            triggered_by=triggered_by,
            reason=reason,
        )
        self._state.phase = to_phase
        self._state.step_history.append(record)
        if to_phase == CoordinatorPhase.VALIDATING:
            # Each validation round starts from a clean verdict.
            self._state.validation_rounds += 1
            self._state.cleared = False
            self._state.missing_fields = ()
        if to_phase != CoordinatorPhase.FAILED:
            self._state.last_error = None
        return record

    def validate_advance(self, to_phase: CoordinatorPhase) -> list[str]:
        """Dry-run check of a phase change; empty list means advance() succeeds."""
        state = self._state
        current = state.phase

        if current in _TERMINAL_PHASES:
            return [f"Attempt {state.attempt_id} is {current.value}; no further steps are possible."]

        allowed = _ALLOWED.get(current, frozenset())
        if to_phase not in allowed:
            return [
                f"Step {current.value} -> {to_phase.value} is not permitted. "
                f"Valid targets: {sorted(p.value for p in allowed)}"
            ]

        violations: list[str] = []
        if to_phase == CoordinatorPhase.APPLYING and not state.cleared:
            violations.append(
                f"{state.field}={state.attempted_value!r} has not passed validation "
                f"and no bypass was exercised."
            )
        if to_phase == CoordinatorPhase.BLOCKED and state.rule is None:
            violations.append("Cannot block without a violated rule.")
        if to_phase == CoordinatorPhase.DISPATCHING:
            if not state.applied:
                violations.append("Cannot dispatch automations before the field write committed.")
            if not state.automations:
                violations.append("Cannot dispatch with no matched automations.")
        if to_phase == CoordinatorPhase.DONE:
            if not state.applied:
                violations.append("Cannot complete an attempt whose field write has not committed.")
            if current == CoordinatorPhase.APPLYING and state.automations:
                violations.append("Matched automations require a send/skip decision first.")
            if (
                current == CoordinatorPhase.AWAITING_DECISION
                and state.resolution not in _COMMITTED_RESOLUTIONS
            ):
                violations.append("A send-and-apply or apply-only decision is required.")
        if to_phase == CoordinatorPhase.CANCELLED and state.applied:
            violations.append(
                f"{state.field} was already written; cancelling after commit is not supported."
            )
        return violations

    def can_advance(self, to_phase: CoordinatorPhase) -> bool:
        return not self.validate_advance(to_phase)

    def record_failed_step(
        self,
        to_phase: CoordinatorPhase,
        error: str,
        *,
        triggered_by: str,
        timestamp: datetime | None = None,
    ) -> StepRecord:
        """Append a rejected step to the history without changing phase."""
        record = StepRecord(
            from_phase=self._state.phase,
            to_phase=to_phase,
            timestamp=timestamp if timestamp is not None else datetime.now(tz=timezone.utc),
            triggered_by=triggered_by,
            reason=f"FAILED: {error}",
            success=False,
        )
        self._state.step_history.append(record)
        self._state.last_error = error
        return record

    # ── Recorders ─────────────────────────────────────────────────────────────

    def record_outcome(self, outcome: ValidationOutcome) -> None:
        self._state.rule = outcome.rule
        self._state.cleared = outcome.is_valid
        self._state.missing_fields = outcome.missing_fields
        self._state.warnings.extend(outcome.warnings)

    def record_bypass(self, rule: TransitionRule, actor: str) -> None:
        """Clear a bypassable rule on behalf of actor without evaluating it.

        Raises:
            TransitionError: If the rule is not marked bypassable.
        """
        if not rule.bypassable:
            raise TransitionError(
                [f"Rule {rule.field}={rule.target_value!r} is not bypassable."]
            )
        self._state.rule = rule
        self._state.cleared = True
        self._state.bypassed_by = actor

    def record_write(self, previous_value: str | None) -> None:
        if self._state.phase != CoordinatorPhase.APPLYING:
            raise TransitionError(
                [f"Field writes are only recorded while applying, not {self._state.phase.value}."]
            )
        self._state.applied = True
        self._state.from_value = previous_value

    def record_matches(self, automations: tuple[AutomationDefinition, ...]) -> None:
        self._state.automations = automations

    def record_resolution(self, resolution: Resolution | None) -> None:
        self._state.resolution = resolution

    def record_warning(self, warning: str) -> None:
        self._state.warnings.append(warning)

    def record_error(self, error: str) -> None:
        self._state.last_error = error


# ─── Serialization Helpers ────────────────────────────────────────────────────


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def rule_from_dict(data: dict[str, Any]) -> TransitionRule:
    """Rebuild a rule from its dict form, dispatching on the kind discriminant.

    Raises:
        ValueError: If kind is missing or unknown.
    """
    kind = RuleKind(data["kind"])
    check = data.get("async_check")
    async_check = (
        AsyncCheck(
            relation=check["relation"],
            link_field=check["link_field"],
            required_documents=tuple(check["required_documents"]),
        )
        if check
        else None
    )
    if kind == RuleKind.STATUS_CHANGE:
        return StatusChangeRule(
            field=data["field"],
            target_value=data["target_value"],
            message=data["message"],
            requires=tuple(data.get("requires", ())),
            action_kind=ActionKind(data.get("action_kind", ActionKind.NONE.value)),
            action_label=data.get("action_label"),
            bypassable=data.get("bypassable", False),
            async_check=async_check,
        )
    waiver = data.get("waived_by")
    return StageRule(
        field=data["field"],
        target_value=data["target_value"],
        message=data["message"],
        requires=tuple(data.get("requires", ())),
        waived_by=Waiver(field=waiver["field"], values=tuple(waiver["values"])) if waiver else None,
        async_check=async_check,
    )


def _automation_from_dict(data: dict[str, Any]) -> AutomationDefinition:
    return AutomationDefinition(
        id=data["id"],
        name=data["name"],
        recipient_type=RecipientType(data["recipient_type"]),
        trigger_field=data["trigger_field"],
        trigger_target_value=data["trigger_target_value"],
        template_id=data.get("template_id"),
        active=data.get("active", True),
        trigger_type=TriggerType(data.get("trigger_type", TriggerType.STATUS_CHANGED.value)),
    )


def _step_from_dict(data: dict[str, Any]) -> StepRecord:
    return StepRecord(
        from_phase=CoordinatorPhase(data["from_phase"]),
        to_phase=CoordinatorPhase(data["to_phase"]),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        triggered_by=data["triggered_by"],
        reason=data["reason"],
        success=data.get("success", True),
    )
