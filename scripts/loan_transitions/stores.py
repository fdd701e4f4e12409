"""In-memory collaborator implementations for tests and local development.

None of these persist across worker restarts. Production deployments inject
implementations backed by the loan database; all three satisfy the Protocols
in interfaces.py structurally (no inheritance).

    InMemoryRecordStore      — RecordStore
    InMemoryAutomationSource — AutomationSource
    InMemoryAutomationQueue  — AutomationQueue, plus the notifier-side
                               mark_sent()/mark_failed() status changes
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any, Iterable

from loan_transitions.interfaces import PersistenceWriteError
from loan_transitions.types import (
    AsyncCheck,
    AutomationDefinition,
    AutomationQueueEntry,
    QueueStatus,
    RecordSnapshot,
    TriggerType,
)


class QueueStateError(Exception):
    """Raised when a queue entry status change is not PENDING -> SENT|FAILED."""


# ─── Record Store ─────────────────────────────────────────────────────────────


class InMemoryRecordStore:
    """Records as plain dicts plus related entities keyed by (relation, id).

    writes keeps every successful field write as (record_id, field, value, actor)
    in call order.
    """

    def __init__(
        self,
        records: dict[str, dict[str, Any]] | None = None,
        related: dict[str, dict[str, dict[str, Any]]] | None = None,
    ) -> None:
        self._records: dict[str, dict[str, Any]] = {
            rid: dict(values) for rid, values in (records or {}).items()
        }
        self._related: dict[str, dict[str, dict[str, Any]]] = related or {}
        self.writes: list[tuple[str, str, str, str]] = []

    async def read_snapshot(self, record_id: str) -> RecordSnapshot:
        return RecordSnapshot(record_id=record_id, values=dict(self._records[record_id]))

    async def read_related_documents(
        self, record_id: str, check: AsyncCheck
    ) -> dict[str, bool] | None:
        link = self._records.get(record_id, {}).get(check.link_field)
        if not link:
            return None
        entity = self._related.get(check.relation, {}).get(link, {})
        return {doc: bool(entity.get(doc)) for doc in check.required_documents}

    async def write_field(
        self, record_id: str, field: str, value: str, *, actor: str
    ) -> str | None:
        if record_id not in self._records:
            raise PersistenceWriteError(f"record {record_id!r} does not exist")
        previous = self._records[record_id].get(field)
        self._records[record_id][field] = value
        self.writes.append((record_id, field, value, actor))
        return previous

    def value_of(self, record_id: str, field: str) -> Any:
        return self._records[record_id].get(field)


# ─── Automation Source ────────────────────────────────────────────────────────


class InMemoryAutomationSource:
    """Holds automation definitions in insertion order."""

    def __init__(self, definitions: Iterable[AutomationDefinition] = ()) -> None:
        self._definitions: list[AutomationDefinition] = list(definitions)

    def add(self, definition: AutomationDefinition) -> None:
        self._definitions.append(definition)

    async def list_active_automations(
        self, trigger_type: TriggerType = TriggerType.STATUS_CHANGED
    ) -> list[AutomationDefinition]:
        return [
            d for d in self._definitions
            if d.active and d.trigger_type == trigger_type
        ]


# ─── Automation Queue ─────────────────────────────────────────────────────────


class InMemoryAutomationQueue:
    """Automation queue with idempotent insert on entry.idempotency_key."""

    def __init__(self) -> None:
        self._entries: dict[str, AutomationQueueEntry] = {}
        self._by_key: dict[str, str] = {}

    async def insert(self, entry: AutomationQueueEntry) -> AutomationQueueEntry:
        existing_id = self._by_key.get(entry.idempotency_key)
        if existing_id is not None:
            return self._entries[existing_id]
        stored = dataclasses.replace(entry, status=QueueStatus.PENDING, sent_at=None, error=None)
        self._entries[stored.id] = stored
        self._by_key[stored.idempotency_key] = stored.id
        return stored

    async def get(self, entry_id: str) -> AutomationQueueEntry | None:
        return self._entries.get(entry_id)

    async def list_pending(self) -> list[AutomationQueueEntry]:
        pending = [e for e in self._entries.values() if e.status == QueueStatus.PENDING]
        return sorted(pending, key=lambda e: e.triggered_at)

    def all_entries(self) -> list[AutomationQueueEntry]:
        return list(self._entries.values())

    # ── Notifier-side status changes ──────────────────────────────────────────

    def mark_sent(self, entry_id: str, sent_at: datetime | None = None) -> AutomationQueueEntry:
        entry = self._pending_entry(entry_id)
        updated = dataclasses.replace(
            entry,
            status=QueueStatus.SENT,
            sent_at=sent_at if sent_at is not None else datetime.now(tz=timezone.utc),
        )
        self._entries[entry_id] = updated
        return updated

    def mark_failed(self, entry_id: str, error: str) -> AutomationQueueEntry:
        entry = self._pending_entry(entry_id)
        updated = dataclasses.replace(entry, status=QueueStatus.FAILED, error=error)
        self._entries[entry_id] = updated
        return updated

    def _pending_entry(self, entry_id: str) -> AutomationQueueEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        if entry.status != QueueStatus.PENDING:
            raise QueueStateError(
                f"Entry {entry_id} is {entry.status.value}; only pending entries can change."
            )
        return entry
