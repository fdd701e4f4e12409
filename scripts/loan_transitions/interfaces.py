"""Collaborator contracts consumed by the transition engine.

Protocol interfaces (@runtime_checkable) for structural subtyping: the record
store, the active-automation source and the automation queue are owned by the
persistence layer; this package only defines what it needs from them.

As with any runtime_checkable Protocol, isinstance() confirms method names
only, not signatures. Static type checking enforces the full contract.

Errors raised by collaborators:
    CheckExecutionError    — an asynchronous precondition read failed
    PersistenceWriteError  — the field write itself failed
    QueueInsertError       — one automation queue insert failed
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from loan_transitions.types import (
    AsyncCheck,
    AutomationDefinition,
    AutomationQueueEntry,
    RecordSnapshot,
    TriggerType,
)


# ─── Collaborator Errors ──────────────────────────────────────────────────────


class CheckExecutionError(Exception):
    """Infrastructure failure while performing an asynchronous precondition check.

    Distinct from a failed predicate: the check could not be evaluated at all.
    """


class PersistenceWriteError(Exception):
    """The record store failed to persist a field change."""


class QueueInsertError(Exception):
    """The automation queue failed to persist one entry.

    automation_id names the automation whose entry was not created.
    """

    def __init__(self, automation_id: str, message: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"{automation_id}: {message}")


# ─── Protocol Interfaces ──────────────────────────────────────────────────────


@runtime_checkable
class RecordStore(Protocol):
    """Reads record snapshots and related-entity state; writes single fields."""

    async def read_snapshot(self, record_id: str) -> RecordSnapshot:
        """Return the current field values of a record.

        Raises:
            KeyError: If the record does not exist.
        """
        ...

    async def read_related_documents(
        self, record_id: str, check: AsyncCheck
    ) -> dict[str, bool] | None:
        """Return document presence for the entity linked by check.link_field.

        Returns None when the record links no related entity. Keys are the
        document names in check.required_documents.

        Raises:
            CheckExecutionError: On infrastructure failure.
        """
        ...

    async def write_field(
        self, record_id: str, field: str, value: str, *, actor: str
    ) -> str | None:
        """Persist one field value and return the previous value.

        Raises:
            PersistenceWriteError: If the write did not happen.
        """
        ...


@runtime_checkable
class AutomationSource(Protocol):
    """Read access to automation definitions."""

    async def list_active_automations(
        self, trigger_type: TriggerType = TriggerType.STATUS_CHANGED
    ) -> list[AutomationDefinition]:
        """Active definitions of the given trigger type, in insertion order."""
        ...


@runtime_checkable
class AutomationQueue(Protocol):
    """Durable queue of automation sends consumed by the external notifier."""

    async def insert(self, entry: AutomationQueueEntry) -> AutomationQueueEntry:
        """Persist entry as PENDING.

        Idempotent on entry.idempotency_key: inserting a known key returns the
        stored entry unchanged.

        Raises:
            QueueInsertError: If the entry could not be persisted.
        """
        ...

    async def get(self, entry_id: str) -> AutomationQueueEntry | None:
        """Return the entry or None if unknown."""
        ...

    async def list_pending(self) -> list[AutomationQueueEntry]:
        """All PENDING entries, oldest first."""
        ...
