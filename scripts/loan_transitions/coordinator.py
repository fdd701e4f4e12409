"""In-process confirmation coordinator for field transitions.

TransitionCoordinator drives one ConfirmationStateMachine per
(record_id, field) through the multi-turn protocol:

    propose_transition()  -> APPLIED | BLOCKED | PENDING_DECISION
                             | REJECTED_IN_FLIGHT | FAILED
    resolve_decision()    -> DispatchResult (SEND_AND_APPLY / APPLY_ONLY)
    cancel()              -> abandon a BLOCKED attempt

Single-flight: the (record_id, field) key is claimed synchronously before the
first await, so a concurrent proposal on the same key is rejected rather
than interleaved. The key stays claimed while a send/skip decision is
pending and is released on DONE, BLOCKED or FAILED.

Business blocks and system failures are separate TransitionOutcome values;
TransitionResult.is_system_failure distinguishes them for callers.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

from loan_transitions.dispatcher import AutomationDispatcher, DispatchOutcome, DispatchResult
from loan_transitions.interfaces import (
    AutomationQueue,
    AutomationSource,
    PersistenceWriteError,
    RecordStore,
)
from loan_transitions.matcher import AutomationMatcher
from loan_transitions.registry import RuleRegistry
from loan_transitions.state_machine import ConfirmationState, ConfirmationStateMachine
from loan_transitions.types import (
    ActionKind,
    AutomationDefinition,
    CoordinatorPhase,
    FieldTransition,
    Resolution,
    TransitionRule,
    ValidationOutcome,
    field_label,
)
from loan_transitions.validation import AsyncValidator

logger = logging.getLogger(__name__)

# Resolutions offered once the field write has committed. CANCEL is never
# offered after commit.
OFFERED_RESOLUTIONS: tuple[Resolution, ...] = (Resolution.SEND_AND_APPLY, Resolution.APPLY_ONLY)


# ─── Configuration ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CoordinatorSettings:
    """Timeouts (seconds) for the coordinator's external calls.

    check_timeout bounds snapshot reads, async precondition checks and the
    active-automation read; write_timeout bounds the field write; queue_timeout
    bounds each queue insert.
    """

    check_timeout: float = 5.0
    write_timeout: float = 10.0
    queue_timeout: float = 10.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CoordinatorSettings:
        """Read LOAN_TRANSITIONS_{CHECK,WRITE,QUEUE}_TIMEOUT, falling back to defaults.

        Raises:
            ValueError: If a variable is set but not a positive number.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        values: dict[str, float] = {}
        for name in ("check_timeout", "write_timeout", "queue_timeout"):
            var = f"LOAN_TRANSITIONS_{name.upper()}"
            raw = env.get(var)
            if raw is None or raw == "":
                values[name] = getattr(defaults, name)
                continue
            value = float(raw)
            if value <= 0:
                raise ValueError(f"{var} must be positive, got {raw!r}")
            values[name] = value
        return cls(**values)


# ─── Result Types ─────────────────────────────────────────────────────────────


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    BLOCKED = "blocked"
    PENDING_DECISION = "pending_decision"
    REJECTED_IN_FLIGHT = "rejected_in_flight"
    FAILED = "failed"


@dataclass(frozen=True)
class TransitionResult:
    """Caller-visible result of propose_transition().

    BLOCKED carries the violated rule and the remediation to perform.
    PENDING_DECISION carries the matched automations and the resolutions the
    caller may choose from. FAILED carries error and error_kind.
    """

    outcome: TransitionOutcome
    record_id: str
    field: str
    attempted_value: str
    field_label: str
    attempt_id: str | None = None
    rule: TransitionRule | None = None
    missing_fields: tuple[str, ...] = ()
    automations: tuple[AutomationDefinition, ...] = ()
    resolutions: tuple[Resolution, ...] = ()
    warnings: tuple[str, ...] = ()
    bypassed: bool = False
    error: str | None = None
    error_kind: str | None = None

    @property
    def is_system_failure(self) -> bool:
        return self.outcome == TransitionOutcome.FAILED

    @property
    def applied(self) -> bool:
        return self.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.PENDING_DECISION)

    @property
    def action_kind(self) -> ActionKind:
        return self.rule.action_kind if self.rule is not None else ActionKind.NONE

    @property
    def action_label(self) -> str | None:
        return self.rule.action_label if self.rule is not None else None


class NoPendingDecisionError(LookupError):
    """Raised by resolve_decision() when no attempt is awaiting a decision."""


# ─── Coordinator ──────────────────────────────────────────────────────────────


class TransitionCoordinator:
    """Orchestrates validate -> apply -> automation decision -> dispatch.

    Usage:
        coordinator = TransitionCoordinator.build(
            RuleRegistry.default(), store, automation_source, queue,
        )
        result = await coordinator.propose_transition(
            "loan-42", "loan_status", "Approved", actor="alice",
        )
        if result.outcome == TransitionOutcome.PENDING_DECISION:
            await coordinator.resolve_decision(
                "loan-42", "loan_status", Resolution.SEND_AND_APPLY, actor="alice",
            )
    """

    def __init__(
        self,
        validator: AsyncValidator,
        store: RecordStore,
        automations: AutomationSource,
        dispatcher: AutomationDispatcher,
        *,
        settings: CoordinatorSettings | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._validator = validator
        self._store = store
        self._automations = automations
        self._dispatcher = dispatcher
        self._settings = settings if settings is not None else CoordinatorSettings()
        self._id_factory = id_factory if id_factory is not None else (lambda: uuid.uuid4().hex)
        self._in_flight: set[tuple[str, str]] = set()
        # Attempts that outlive one call: BLOCKED and AWAITING_DECISION.
        self._attempts: dict[tuple[str, str], ConfirmationStateMachine] = {}
        # Most recent finished attempt per key, for readback.
        self._finished: dict[tuple[str, str], ConfirmationState] = {}

    @classmethod
    def build(
        cls,
        registry: RuleRegistry,
        store: RecordStore,
        automations: AutomationSource,
        queue: AutomationQueue,
        *,
        settings: CoordinatorSettings | None = None,
    ) -> TransitionCoordinator:
        """Wire a coordinator with the default validator and dispatcher."""
        settings = settings if settings is not None else CoordinatorSettings()
        return cls(
            AsyncValidator(registry, store, timeout=settings.check_timeout),
            store,
            automations,
            AutomationDispatcher(queue, timeout=settings.queue_timeout),
            settings=settings,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def propose_transition(
        self,
        record_id: str,
        field: str,
        new_value: str,
        *,
        actor: str,
        bypass: bool = False,
    ) -> TransitionResult:
        """Validate and, if permitted, apply field=new_value on record_id.

        Args:
            record_id: Record to change.
            field: Field to change.
            new_value: Proposed value.
            actor: User performing the change; recorded on writes, bypasses
                and queue entries.
            bypass: Skip the predicate of a bypassable rule. Ignored for rules
                that are not bypassable.
        """
        key = (record_id, field)
        if key in self._in_flight:
            logger.info(
                "Rejected concurrent transition: record=%s field=%s value=%r actor=%s",
                record_id, field, new_value, actor,
            )
            return TransitionResult(
                outcome=TransitionOutcome.REJECTED_IN_FLIGHT,
                record_id=record_id,
                field=field,
                attempted_value=new_value,
                field_label=field_label(field),
                error=f"A transition of {field} on {record_id} is already in progress.",
                error_kind="in_flight",
            )

        self._in_flight.add(key)
        sm: ConfirmationStateMachine | None = None
        try:
            sm = self._start_attempt(key, new_value, actor)
            return await self._run(sm, actor=actor, bypass=bypass)
        finally:
            phase = sm.phase if sm is not None else None
            if phase != CoordinatorPhase.AWAITING_DECISION:
                self._in_flight.discard(key)
            if sm is not None and phase not in (
                CoordinatorPhase.BLOCKED,
                CoordinatorPhase.AWAITING_DECISION,
            ):
                self._attempts.pop(key, None)
                self._finished[key] = sm.state

    async def resolve_decision(
        self,
        record_id: str,
        field: str,
        resolution: Resolution,
        *,
        actor: str,
    ) -> DispatchResult:
        """Resolve a PENDING_DECISION attempt.

        SEND_AND_APPLY queues one entry per matched automation; APPLY_ONLY
        queues nothing. CANCEL is reported as NOT_SUPPORTED because the field
        write already committed; the decision stays pending. A second
        resolution arriving while one is being applied is also refused with
        NOT_SUPPORTED.

        Raises:
            NoPendingDecisionError: If no attempt on (record_id, field) awaits a decision.
        """
        key = (record_id, field)
        sm = self._attempts.get(key)
        if sm is None or sm.phase != CoordinatorPhase.AWAITING_DECISION:
            raise NoPendingDecisionError(f"No pending automation decision for {field} on {record_id}")

        if resolution == Resolution.CANCEL:
            violations = sm.validate_advance(CoordinatorPhase.CANCELLED)
            message = "; ".join(violations) or "Cancellation is not supported."
            sm.record_failed_step(CoordinatorPhase.CANCELLED, message, triggered_by=actor)
            return DispatchResult(outcome=DispatchOutcome.NOT_SUPPORTED, message=message)

        state = sm.state
        if state.resolution is not None:
            message = (
                f"A {state.resolution.value} decision for {field} on {record_id} "
                "is already being applied."
            )
            logger.info("Rejected overlapping decision %s: %s", resolution.value, message)
            return DispatchResult(outcome=DispatchOutcome.NOT_SUPPORTED, message=message)

        # Claimed before the first await; a concurrent resolve sees it above.
        sm.record_resolution(resolution)
        try:
            if resolution == Resolution.APPLY_ONLY:
                sm.advance(CoordinatorPhase.DONE, triggered_by=actor, reason="automations skipped")
                logger.info(
                    "Automations skipped: record=%s %s=%r actor=%s",
                    record_id, field, state.attempted_value, actor,
                )
                return DispatchResult(outcome=DispatchOutcome.SKIPPED)

            transition = FieldTransition(
                record_id=record_id,
                field=field,
                to_value=state.attempted_value,
                from_value=state.from_value,
                attempt_id=state.attempt_id,
            )
            try:
                result = await self._dispatcher.dispatch(
                    state.automations, transition, triggered_by=actor
                )
            except BaseException:
                sm.record_resolution(None)
                raise
            sm.advance(
                CoordinatorPhase.DONE,
                triggered_by=actor,
                reason=f"automations {result.outcome.value}",
            )
            return result
        finally:
            if sm.phase == CoordinatorPhase.DONE:
                self._attempts.pop(key, None)
                self._finished[key] = sm.state
                self._in_flight.discard(key)

    def cancel(self, record_id: str, field: str, *, actor: str = "system") -> bool:
        """Abandon a BLOCKED attempt. Returns False when there is nothing to cancel.

        Attempts awaiting an automation decision cannot be cancelled: their
        field write already committed.
        """
        key = (record_id, field)
        sm = self._attempts.get(key)
        if sm is None or sm.phase != CoordinatorPhase.BLOCKED:
            return False
        sm.advance(CoordinatorPhase.CANCELLED, triggered_by=actor, reason="abandoned by caller")
        self._attempts.pop(key)
        self._finished[key] = sm.state
        return True

    def state_of(self, record_id: str, field: str) -> ConfirmationState | None:
        """Current attempt state, or the most recently finished one."""
        key = (record_id, field)
        sm = self._attempts.get(key)
        if sm is not None:
            return sm.state
        return self._finished.get(key)

    def is_in_flight(self, record_id: str, field: str) -> bool:
        return (record_id, field) in self._in_flight

    # ── Steps ─────────────────────────────────────────────────────────────────

    def _start_attempt(
        self, key: tuple[str, str], new_value: str, actor: str
    ) -> ConfirmationStateMachine:
        previous = self._attempts.get(key)
        if previous is not None and previous.phase == CoordinatorPhase.BLOCKED:
            if previous.state.attempted_value == new_value:
                previous.advance(
                    CoordinatorPhase.VALIDATING, triggered_by=actor, reason="re-attempt after block"
                )
                return previous
            previous.advance(
                CoordinatorPhase.CANCELLED,
                triggered_by=actor,
                reason=f"superseded by proposal of {new_value!r}",
            )
            self._attempts.pop(key)

        record_id, field = key
        sm = ConfirmationStateMachine(self._id_factory(), record_id, field, new_value)
        sm.advance(CoordinatorPhase.VALIDATING, triggered_by=actor, reason="proposed")
        self._attempts[key] = sm
        return sm

    async def _run(
        self, sm: ConfirmationStateMachine, *, actor: str, bypass: bool
    ) -> TransitionResult:
        state = sm.state
        transition = FieldTransition(
            record_id=state.record_id,
            field=state.field,
            to_value=state.attempted_value,
            attempt_id=state.attempt_id,
        )

        try:
            snapshot = await asyncio.wait_for(
                self._store.read_snapshot(state.record_id),
                timeout=self._settings.check_timeout,
            )
        except KeyError:
            return self._fail(sm, actor, f"record {state.record_id!r} not found", "record_not_found")
        except (TimeoutError, OSError) as e:
            return self._fail(sm, actor, f"snapshot read failed: {e!r}", "snapshot_read")

        rule = self._validator.registry.lookup(state.field, state.attempted_value)
        if bypass and rule is not None and rule.bypassable:
            sm.record_bypass(rule, actor)
            outcome = ValidationOutcome(is_valid=True, rule=rule, bypassed=True)
            logger.info(
                "Rule bypassed: record=%s %s=%r actor=%s",
                state.record_id, state.field, state.attempted_value, actor,
            )
        else:
            if bypass and rule is not None:
                logger.info(
                    "Bypass ignored for non-bypassable rule %s=%r (actor=%s)",
                    state.field, state.attempted_value, actor,
                )
            outcome = await self._validator.validate(transition, snapshot)
            sm.record_outcome(outcome)

        if not outcome.is_valid:
            sm.advance(
                CoordinatorPhase.BLOCKED,
                triggered_by=actor,
                reason=outcome.reason or "rule violated",
            )
            return self._result(sm, TransitionOutcome.BLOCKED, outcome)

        sm.advance(
            CoordinatorPhase.APPLYING,
            triggered_by=actor,
            reason=f"bypassed by {actor}" if outcome.bypassed else "validation passed",
        )
        try:
            previous = await asyncio.wait_for(
                self._store.write_field(
                    state.record_id, state.field, state.attempted_value, actor=actor
                ),
                timeout=self._settings.write_timeout,
            )
        except (PersistenceWriteError, TimeoutError, OSError) as e:
            logger.error(
                "Field write failed: record=%s %s=%r error=%r",
                state.record_id, state.field, state.attempted_value, e,
            )
            return self._fail(sm, actor, f"field write failed: {e}", "persistence_write", outcome)
        sm.record_write(previous)

        matches = await self._match(sm, state.field, state.attempted_value)
        sm.record_matches(matches)
        if not matches:
            sm.advance(CoordinatorPhase.DONE, triggered_by=actor, reason="applied; no automations")
            return self._result(sm, TransitionOutcome.APPLIED, outcome)

        sm.advance(
            CoordinatorPhase.DISPATCHING,
            triggered_by=actor,
            reason=f"{len(matches)} automation(s) matched",
        )
        sm.advance(
            CoordinatorPhase.AWAITING_DECISION,
            triggered_by=actor,
            reason="awaiting send/skip decision",
        )
        return self._result(sm, TransitionOutcome.PENDING_DECISION, outcome)

    async def _match(
        self, sm: ConfirmationStateMachine, field: str, new_value: str
    ) -> tuple[AutomationDefinition, ...]:
        try:
            matcher = await asyncio.wait_for(
                AutomationMatcher.from_source(self._automations),
                timeout=self._settings.check_timeout,
            )
        except Exception as e:  # noqa: BLE001
            # The field write already committed; without the active set there
            # is nothing to offer.
            logger.warning("Active automation read failed for %s=%r: %r", field, new_value, e)
            sm.record_warning(f"automations not checked: {e!r}")
            return ()
        return matcher.match(field, new_value)

    # ── Result Helpers ────────────────────────────────────────────────────────

    def _fail(
        self,
        sm: ConfirmationStateMachine,
        actor: str,
        error: str,
        error_kind: str,
        outcome: ValidationOutcome | None = None,
    ) -> TransitionResult:
        sm.advance(CoordinatorPhase.FAILED, triggered_by=actor, reason=error)
        sm.record_error(error)
        result = self._result(sm, TransitionOutcome.FAILED, outcome)
        return dataclasses.replace(result, error=error, error_kind=error_kind)

    def _result(
        self,
        sm: ConfirmationStateMachine,
        outcome: TransitionOutcome,
        validation: ValidationOutcome | None,
    ) -> TransitionResult:
        state = sm.state
        return TransitionResult(
            outcome=outcome,
            record_id=state.record_id,
            field=state.field,
            attempted_value=state.attempted_value,
            field_label=field_label(state.field),
            attempt_id=state.attempt_id,
            rule=state.rule,
            missing_fields=state.missing_fields,
            automations=state.automations,
            resolutions=OFFERED_RESOLUTIONS if outcome == TransitionOutcome.PENDING_DECISION else (),
            warnings=tuple(state.warnings),
            bypassed=validation.bypassed if validation is not None else False,
        )
