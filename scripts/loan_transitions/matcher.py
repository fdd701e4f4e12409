"""Automation matcher: which active automations does a field change trigger?

match(field, new_value) is pure over the definition set the matcher was built
with. Results keep insertion order of the active set and are deduplicated by
automation id (first definition wins), so repeated calls return identical,
order-stable tuples.
"""

from __future__ import annotations

import logging
from typing import Iterable

from loan_transitions.interfaces import AutomationSource
from loan_transitions.types import AutomationDefinition, TriggerType

logger = logging.getLogger(__name__)


class AutomationMatcher:
    """Matches field transitions against active on-field-change automations.

    Inactive definitions and other trigger types are dropped at construction.
    """

    def __init__(self, definitions: Iterable[AutomationDefinition]) -> None:
        self._active: tuple[AutomationDefinition, ...] = tuple(
            d for d in definitions
            if d.active and d.trigger_type == TriggerType.STATUS_CHANGED
        )

    @classmethod
    async def from_source(cls, source: AutomationSource) -> AutomationMatcher:
        """Build a matcher from the collaborator's current active set."""
        definitions = await source.list_active_automations(TriggerType.STATUS_CHANGED)
        return cls(definitions)

    @property
    def active(self) -> tuple[AutomationDefinition, ...]:
        return self._active

    def match(self, field: str, new_value: str) -> tuple[AutomationDefinition, ...]:
        seen: set[str] = set()
        matches: list[AutomationDefinition] = []
        for definition in self._active:
            if definition.trigger_field != field or definition.trigger_target_value != new_value:
                continue
            if definition.id in seen:
                logger.debug("Duplicate automation %s dropped from match", definition.id)
                continue
            seen.add(definition.id)
            matches.append(definition)
        return tuple(matches)
