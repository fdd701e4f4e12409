"""Shared pytest fixtures and helpers for the loan_transitions test suite.

Module-level helpers (import directly):
    _make_record(**values)            — field dict for a loan record with sensible defaults.
    _make_automation(id, field, value, **kwargs) — AutomationDefinition.
    _make_coordinator(...)            — TransitionCoordinator over in-memory collaborators.
    _drive_to(sm, phase)              — drive a ConfirmationStateMachine along the happy path.
    _GatedRecordStore                 — InMemoryRecordStore whose reads wait on an asyncio.Event.
    _SlowQueue                        — InMemoryAutomationQueue that sleeps before each insert.

Module-level fixtures (import directly):
    _TRANSITION_FIXTURE — TransitionFixture singleton (YAML-driven scenarios).

pytest fixtures:
    registry, store, automation_source, queue, coordinator
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import pytest

from loan_transitions.coordinator import CoordinatorSettings, TransitionCoordinator
from loan_transitions.registry import RuleRegistry
from loan_transitions.state_machine import ConfirmationStateMachine
from loan_transitions.stores import (
    InMemoryAutomationQueue,
    InMemoryAutomationSource,
    InMemoryRecordStore,
)
from loan_transitions.types import (
    AsyncCheck,
    AutomationDefinition,
    AutomationQueueEntry,
    CoordinatorPhase,
    STATUS_CHANGE_RULES,
    RecipientType,
    Resolution,
    ValidationOutcome,
)

# Import after production imports so pythonpath=scripts:tests resolves fixtures/
from fixtures.fixture_loader import TransitionFixture


# ─── Scenario Fixture Singleton ───────────────────────────────────────────────

_TRANSITION_FIXTURE = TransitionFixture()


# ─── Module-Level Helpers ─────────────────────────────────────────────────────

LOAN_ID = "loan-1"
ACTOR = "alice"


def _make_record(**values: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "loan_status": "Processing",
        "disclosure_status": "Requested",
        "pipeline_stage": "lead",
        "pr_type": "P",
    }
    record.update(values)
    return record


def _make_automation(
    automation_id: str,
    field: str = "loan_status",
    value: str = "Approved",
    **kwargs: Any,
) -> AutomationDefinition:
    kwargs.setdefault("name", f"Email for {automation_id}")
    kwargs.setdefault("recipient_type", RecipientType.BORROWER)
    return AutomationDefinition(
        id=automation_id,
        trigger_field=field,
        trigger_target_value=value,
        **kwargs,
    )


def _counting_ids(prefix: str = "attempt"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def _make_coordinator(
    store: Any,
    source: Any | None = None,
    queue: Any | None = None,
    registry: RuleRegistry | None = None,
    settings: CoordinatorSettings | None = None,
) -> TransitionCoordinator:
    coordinator = TransitionCoordinator.build(
        registry if registry is not None else RuleRegistry.default(),
        store,
        source if source is not None else InMemoryAutomationSource(),
        queue if queue is not None else InMemoryAutomationQueue(),
        settings=settings,
    )
    coordinator._id_factory = _counting_ids()
    return coordinator


def _drive_to(sm: ConfirmationStateMachine, target: CoordinatorPhase) -> None:
    """Advance a fresh state machine along the happy path up to target.

    Path: VALIDATING -> APPLYING -> DISPATCHING -> AWAITING_DECISION -> DONE,
    with one matched automation and SEND_AND_APPLY recorded as needed. BLOCKED
    is reached from VALIDATING with a failing outcome.
    """
    sm.advance(CoordinatorPhase.VALIDATING, triggered_by=ACTOR, reason="proposed")
    if target == CoordinatorPhase.VALIDATING:
        return
    if target in (CoordinatorPhase.BLOCKED, CoordinatorPhase.CANCELLED):
        sm.record_outcome(
            ValidationOutcome(
                is_valid=False,
                rule=STATUS_CHANGE_RULES[0],
                reason=STATUS_CHANGE_RULES[0].message,
                missing_fields=STATUS_CHANGE_RULES[0].requires,
            )
        )
        sm.advance(CoordinatorPhase.BLOCKED, triggered_by=ACTOR, reason="rule violated")
        if target == CoordinatorPhase.CANCELLED:
            sm.advance(CoordinatorPhase.CANCELLED, triggered_by=ACTOR, reason="abandoned")
        return

    sm.record_outcome(ValidationOutcome(is_valid=True))
    sm.advance(CoordinatorPhase.APPLYING, triggered_by=ACTOR, reason="valid")
    if target == CoordinatorPhase.APPLYING:
        return
    sm.record_write("Processing")
    sm.record_matches((_make_automation("auto-1"),))
    sm.advance(CoordinatorPhase.DISPATCHING, triggered_by=ACTOR, reason="1 matched")
    if target == CoordinatorPhase.DISPATCHING:
        return
    sm.advance(CoordinatorPhase.AWAITING_DECISION, triggered_by=ACTOR, reason="awaiting")
    if target == CoordinatorPhase.AWAITING_DECISION:
        return
    sm.record_resolution(Resolution.SEND_AND_APPLY)
    sm.advance(CoordinatorPhase.DONE, triggered_by=ACTOR, reason="sent")


# ─── Test Doubles ─────────────────────────────────────────────────────────────


class _GatedRecordStore(InMemoryRecordStore):
    """Snapshot reads block until gate is set; entered is set once a read starts."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.snapshot_reads = 0

    async def read_snapshot(self, record_id: str):
        self.snapshot_reads += 1
        self.entered.set()
        await self.gate.wait()
        return await super().read_snapshot(record_id)


class _FailingRelatedStore(InMemoryRecordStore):
    """Related-document reads raise error; everything else behaves normally."""

    def __init__(self, error: BaseException, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._error = error
        self.related_reads = 0

    async def read_related_documents(self, record_id: str, check: AsyncCheck):
        self.related_reads += 1
        raise self._error


class _FailingWriteStore(InMemoryRecordStore):
    """write_field always raises error."""

    def __init__(self, error: BaseException, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._error = error

    async def write_field(self, record_id: str, field: str, value: str, *, actor: str):
        raise self._error


class _FlakyQueue(InMemoryAutomationQueue):
    """Queue whose inserts fail for automation ids in fail_ids."""

    def __init__(self, fail_ids: set[str], error_factory) -> None:
        super().__init__()
        self.fail_ids = set(fail_ids)
        self._error_factory = error_factory
        self.insert_calls = 0

    async def insert(self, entry: AutomationQueueEntry) -> AutomationQueueEntry:
        self.insert_calls += 1
        if entry.automation_id in self.fail_ids:
            raise self._error_factory(entry.automation_id)
        return await super().insert(entry)


class _BrokenAutomationSource:
    """Automation source whose reads always raise error (OSError by default)."""

    def __init__(self, error: Exception | None = None) -> None:
        self._error = error if error is not None else OSError("automation table unavailable")

    async def list_active_automations(self, trigger_type=None):
        raise self._error


class _SlowQueue(InMemoryAutomationQueue):
    """Queue that sleeps delay seconds before every insert."""

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self._delay = delay

    async def insert(self, entry: AutomationQueueEntry) -> AutomationQueueEntry:
        await asyncio.sleep(self._delay)
        return await super().insert(entry)


# ─── pytest Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def registry() -> RuleRegistry:
    return RuleRegistry.default()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore({LOAN_ID: _make_record()})


@pytest.fixture
def automation_source() -> InMemoryAutomationSource:
    return InMemoryAutomationSource(
        [
            _make_automation("auto-approved-borrower", "loan_status", "Approved"),
            _make_automation(
                "auto-approved-agent",
                "loan_status",
                "Approved",
                recipient_type=RecipientType.BUYER_AGENT,
            ),
            _make_automation("auto-ctc", "loan_status", "CTC"),
            _make_automation("auto-inactive", "loan_status", "Approved", active=False),
        ]
    )


@pytest.fixture
def queue() -> InMemoryAutomationQueue:
    return InMemoryAutomationQueue()


@pytest.fixture
def coordinator(store, automation_source, queue) -> TransitionCoordinator:
    return _make_coordinator(store, automation_source, queue)


@pytest.fixture
def transition_fixture() -> TransitionFixture:
    return _TRANSITION_FIXTURE
