"""Tests for loan_transitions.activities — collaborator singleton + activities.

BDD Acceptance Criteria:
    AC1: Given init_collaborators(...), when an activity runs, then it
         delegates to the injected collaborators.
    AC2: Given no injected collaborators, when any activity runs, then it
         raises ApplicationError(non_retryable=True).
    AC3: Given a failed field write, then write_field raises a non-retryable
         ApplicationError of type "PersistenceWriteError".
    AC4: Should never use class-method activities.

Coverage:
    - validate_transition: block, pass, bypass, fail-open warning, missing record
    - write_field: success + failure
    - match_automations: matches + source failure -> []
    - enqueue_automations: idempotent per attempt
"""

from __future__ import annotations

import inspect

import pytest

from temporalio.exceptions import ApplicationError
from temporalio.testing import ActivityEnvironment

import loan_transitions.activities as activities_mod
from conftest import (
    ACTOR,
    LOAN_ID,
    _BrokenAutomationSource,
    _FailingRelatedStore,
    _FailingWriteStore,
    _make_automation,
    _make_record,
)
from loan_transitions.activities import (
    ALL_ACTIVITIES,
    enqueue_automations,
    init_collaborators,
    match_automations,
    validate_transition,
    write_field,
)
from loan_transitions.dispatcher import DispatchOutcome
from loan_transitions.interfaces import CheckExecutionError, PersistenceWriteError
from loan_transitions.registry import RuleRegistry
from loan_transitions.stores import InMemoryAutomationQueue, InMemoryRecordStore
from loan_transitions.types import FieldTransition, StatusChangeRule


def _transition(field: str = "loan_status", value: str = "Approved", record_id: str = LOAN_ID):
    return FieldTransition(record_id=record_id, field=field, to_value=value, attempt_id="attempt-1")


# ─── Fixture: reset singleton before each test ────────────────────────────────


@pytest.fixture(autouse=True)
def reset_collaborators():
    activities_mod.reset_collaborators()
    yield
    activities_mod.reset_collaborators()


@pytest.fixture
def env() -> ActivityEnvironment:
    return ActivityEnvironment()


@pytest.fixture
def wired(registry, store, automation_source, queue):
    init_collaborators(registry, store, automation_source, queue)
    return store, queue


# ─── Uninitialized ────────────────────────────────────────────────────────────


class TestUninitialized:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fn, args",
        [
            (validate_transition, (_transition(), False, ACTOR)),
            (write_field, (_transition(), ACTOR)),
            (match_automations, ("loan_status", "Approved")),
            (enqueue_automations, ([], _transition(), ACTOR)),
        ],
        ids=["validate", "write", "match", "enqueue"],
    )
    async def test_raises_non_retryable(self, env, fn, args) -> None:
        with pytest.raises(ApplicationError) as exc:
            await env.run(fn, *args)
        assert exc.value.non_retryable is True
        assert "init_collaborators" in str(exc.value)

    def test_activities_are_module_level_functions(self) -> None:
        for fn in ALL_ACTIVITIES:
            assert inspect.iscoroutinefunction(fn)
            assert "." not in fn.__qualname__


# ─── validate_transition ──────────────────────────────────────────────────────


class TestValidateTransition:
    @pytest.mark.asyncio
    async def test_blocks_on_violation(self, env, wired) -> None:
        outcome = await env.run(validate_transition, _transition("loan_status", "AWC"), False, ACTOR)
        assert not outcome.is_valid
        assert outcome.missing_fields == ("initial_approval_file",)

    @pytest.mark.asyncio
    async def test_passes_without_rule(self, env, wired) -> None:
        outcome = await env.run(validate_transition, _transition(), False, ACTOR)
        assert outcome.is_valid
        assert outcome.rule is None

    @pytest.mark.asyncio
    async def test_bypass_only_for_bypassable_rules(self, env, store, automation_source, queue) -> None:
        bypassable = StatusChangeRule(
            field="loan_status", target_value="CTC", message="m", requires=("ctc_file",), bypassable=True
        )
        init_collaborators(RuleRegistry([bypassable]), store, automation_source, queue)
        outcome = await env.run(validate_transition, _transition("loan_status", "CTC"), True, ACTOR)
        assert outcome.is_valid and outcome.bypassed

        init_collaborators(RuleRegistry.default(), store, automation_source, queue)
        outcome = await env.run(validate_transition, _transition("loan_status", "AWC"), True, ACTOR)
        assert not outcome.is_valid and not outcome.bypassed

    @pytest.mark.asyncio
    async def test_async_check_fails_open(self, env, registry, automation_source, queue) -> None:
        store = _FailingRelatedStore(
            CheckExecutionError("down"), {LOAN_ID: _make_record(condo_id="condo-9")}
        )
        init_collaborators(registry, store, automation_source, queue)
        outcome = await env.run(validate_transition, _transition("condo_status", "Received"), False, ACTOR)
        assert outcome.is_valid
        assert outcome.warnings

    @pytest.mark.asyncio
    async def test_missing_record_is_non_retryable(self, env, wired) -> None:
        with pytest.raises(ApplicationError) as exc:
            await env.run(validate_transition, _transition(record_id="loan-404"), False, ACTOR)
        assert exc.value.non_retryable is True
        assert exc.value.type == "RecordNotFound"


# ─── write_field ──────────────────────────────────────────────────────────────


class TestWriteField:
    @pytest.mark.asyncio
    async def test_returns_previous_value(self, env, wired) -> None:
        store, _ = wired
        previous = await env.run(write_field, _transition(), ACTOR)
        assert previous == "Processing"
        assert store.value_of(LOAN_ID, "loan_status") == "Approved"

    @pytest.mark.asyncio
    async def test_failure_is_typed(self, env, registry, automation_source, queue) -> None:
        store = _FailingWriteStore(PersistenceWriteError("disk full"), {LOAN_ID: _make_record()})
        init_collaborators(registry, store, automation_source, queue)
        with pytest.raises(ApplicationError) as exc:
            await env.run(write_field, _transition(), ACTOR)
        assert exc.value.type == "PersistenceWriteError"
        assert exc.value.non_retryable is True


# ─── match_automations / enqueue_automations ──────────────────────────────────


class TestAutomationActivities:
    @pytest.mark.asyncio
    async def test_match(self, env, wired) -> None:
        matches = await env.run(match_automations, "loan_status", "Approved")
        assert [a.id for a in matches] == ["auto-approved-borrower", "auto-approved-agent"]

    @pytest.mark.asyncio
    async def test_match_source_failure_is_empty(self, env, registry, queue) -> None:
        init_collaborators(registry, InMemoryRecordStore(), _BrokenAutomationSource(), queue)
        assert await env.run(match_automations, "loan_status", "Approved") == []

    @pytest.mark.asyncio
    async def test_match_unexpected_source_error_is_empty(self, env, registry, queue) -> None:
        source = _BrokenAutomationSource(RuntimeError("bad automation row"))
        init_collaborators(registry, InMemoryRecordStore(), source, queue)
        assert await env.run(match_automations, "loan_status", "Approved") == []

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_per_attempt(self, env, wired) -> None:
        _, queue = wired
        automations = [_make_automation("a1"), _make_automation("a2")]
        first = await env.run(enqueue_automations, automations, _transition(), ACTOR)
        second = await env.run(enqueue_automations, automations, _transition(), ACTOR)
        assert first.outcome == DispatchOutcome.QUEUED
        assert [e.id for e in second.entries] == [e.id for e in first.entries]
        assert len(queue.all_entries()) == 2
        assert isinstance(queue, InMemoryAutomationQueue)
