"""Automation dispatcher: persists one PENDING queue entry per matched automation.

Sending is done by an external notifier that consumes PENDING rows. This
module only creates entries and reads their status back.

Idempotency: every entry carries a deterministic key derived from
(record_id, automation_id, new_value, attempt_id). Re-dispatching the same
transition returns the stored entries instead of creating duplicates, so a
failed insert is safe to retry.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from loan_transitions.interfaces import AutomationQueue, QueueInsertError
from loan_transitions.types import (
    AutomationDefinition,
    AutomationQueueEntry,
    FieldTransition,
    QueueStatus,
)

logger = logging.getLogger(__name__)

_KEY_RECIPE = "loan_transitions.automation_queue.idempotency_key.v1"


# ─── Result Types ─────────────────────────────────────────────────────────────


class DispatchOutcome(str, Enum):
    """Overall outcome of resolving a pending automation decision."""

    QUEUED = "queued"
    PARTIALLY_QUEUED = "partially_queued"
    SKIPPED = "skipped"
    NOT_SUPPORTED = "not_supported"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueInsertFailure:
    """One automation whose queue entry could not be created."""

    automation_id: str
    error: str


@dataclass(frozen=True)
class DispatchResult:
    """Entries created (or found) and per-automation failures.

    The field change is committed whenever a DispatchResult is produced by the
    coordinator; failures here never undo it.
    """

    outcome: DispatchOutcome
    entries: tuple[AutomationQueueEntry, ...] = ()
    failures: tuple[QueueInsertFailure, ...] = ()
    message: str | None = None


# ─── Keys ─────────────────────────────────────────────────────────────────────


def idempotency_key(
    *, record_id: str, automation_id: str, new_value: str, attempt_id: str
) -> str:
    payload = {
        "record_id": record_id,
        "automation_id": automation_id,
        "new_value": new_value,
        "attempt_id": attempt_id,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(f"{_KEY_RECIPE}|{canonical}".encode("utf-8")).hexdigest()


def dedupe_by_id(automations: Iterable[AutomationDefinition]) -> tuple[AutomationDefinition, ...]:
    """Drop repeated automation ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique: list[AutomationDefinition] = []
    for automation in automations:
        if automation.id not in seen:
            seen.add(automation.id)
            unique.append(automation)
    return tuple(unique)


def build_entry(
    automation: AutomationDefinition,
    transition: FieldTransition,
    *,
    triggered_by: str,
    triggered_at: datetime,
) -> AutomationQueueEntry:
    key = idempotency_key(
        record_id=transition.record_id,
        automation_id=automation.id,
        new_value=transition.to_value,
        attempt_id=transition.attempt_id,
    )
    return AutomationQueueEntry(
        id=f"aq-{key[:24]}",
        automation_id=automation.id,
        record_id=transition.record_id,
        field=transition.field,
        old_value=transition.from_value,
        new_value=transition.to_value,
        triggered_by=triggered_by,
        triggered_at=triggered_at,
        idempotency_key=key,
    )


# ─── Dispatcher ───────────────────────────────────────────────────────────────


class AutomationDispatcher:
    """Creates queue entries for a committed transition.

    Each insert is attempted independently, bounded by timeout (seconds); a
    QueueInsertError, timeout or connection error for one automation is
    reported in DispatchResult.failures and does not stop the others.
    """

    def __init__(self, queue: AutomationQueue, *, timeout: float = 10.0) -> None:
        self._queue = queue
        self._timeout = timeout

    async def dispatch(
        self,
        automations: Iterable[AutomationDefinition],
        transition: FieldTransition,
        *,
        triggered_by: str,
        triggered_at: datetime | None = None,
    ) -> DispatchResult:
        when = triggered_at if triggered_at is not None else datetime.now(tz=timezone.utc)
        entries: list[AutomationQueueEntry] = []
        failures: list[QueueInsertFailure] = []

        for automation in dedupe_by_id(automations):
            entry = build_entry(automation, transition, triggered_by=triggered_by, triggered_at=when)
            try:
                stored = await asyncio.wait_for(self._queue.insert(entry), timeout=self._timeout)
            except (QueueInsertError, TimeoutError, OSError) as e:
                logger.warning(
                    "Queue insert failed: automation=%s record=%s field=%s error=%r",
                    automation.id,
                    transition.record_id,
                    transition.field,
                    e,
                )
                failures.append(QueueInsertFailure(automation_id=automation.id, error=str(e) or type(e).__name__))
                continue
            entries.append(stored)

        if not failures:
            outcome = DispatchOutcome.QUEUED
        elif entries:
            outcome = DispatchOutcome.PARTIALLY_QUEUED
        else:
            outcome = DispatchOutcome.FAILED
        logger.info(
            "Dispatched %d automation(s) for record=%s %s=%r (%d failed)",
            len(entries),
            transition.record_id,
            transition.field,
            transition.to_value,
            len(failures),
        )
        return DispatchResult(outcome=outcome, entries=tuple(entries), failures=tuple(failures))

    async def status_of(self, entry_id: str) -> QueueStatus | None:
        entry = await self._queue.get(entry_id)
        return entry.status if entry is not None else None

    async def pending(self) -> list[AutomationQueueEntry]:
        return await self._queue.list_pending()
