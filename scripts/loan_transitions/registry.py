"""Immutable rule registry keyed by (field, target value).

The registry is built once at service start, either from the canonical
catalogue in types.py or from a static YAML file, and injected into the
validators and the coordinator. It is never mutated after construction.

YAML layout (rules.yaml):

    status_rules:
      - field: disclosure_status
        target_value: Ordered
        message: You must upload a Disclosure document ...
        requires: [disc_file]
        action_kind: upload_file
        action_label: Upload Disclosure Package
        bypassable: false
        async_check:              # optional
          relation: condo
          link_field: condo_id
          required_documents: [budget_doc, mip_doc, cq_doc]
    stage_rules:
      - field: pipeline_stage
        target_value: active
        message: Please upload a contract ...
        requires: [contract_file]
        waived_by: {field: pr_type, values: [R, HELOC]}
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from loan_transitions.types import (
    STAGE_RULES,
    STATUS_CHANGE_RULES,
    ActionKind,
    AsyncCheck,
    StageRule,
    StatusChangeRule,
    TransitionRule,
    Waiver,
)


class RuleConfigError(Exception):
    """Raised when static rule configuration is malformed."""


class RuleRegistry:
    """Exact-match lookup from (field, target_value) to at most one rule.

    Lookups are case-sensitive on both the field name and the target value.
    There are no wildcard or range rules.

    Usage:
        registry = RuleRegistry.default()
        rule = registry.lookup("disclosure_status", "Sent")
    """

    def __init__(self, rules: Iterable[TransitionRule]) -> None:
        table: dict[tuple[str, str], TransitionRule] = {}
        for rule in rules:
            key = (rule.field, rule.target_value)
            if key in table:
                raise ValueError(
                    f"Duplicate rule for field {rule.field!r} -> {rule.target_value!r}"
                )
            table[key] = rule
        self._rules: Mapping[tuple[str, str], TransitionRule] = MappingProxyType(table)

    @classmethod
    def default(cls) -> RuleRegistry:
        """Registry over the canonical status and stage rule catalogue."""
        return cls((*STATUS_CHANGE_RULES, *STAGE_RULES))

    @classmethod
    def from_yaml(cls, path: str | Path) -> RuleRegistry:
        """Load a registry from a static YAML rules file.

        Raises:
            RuleConfigError: If the file is not a mapping or an entry is malformed.
        """
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise RuleConfigError(f"{path}: top level must be a mapping")
        rules: list[TransitionRule] = []
        for index, entry in enumerate(data.get("status_rules") or []):
            rules.append(_status_rule_from_dict(entry, f"{path}: status_rules[{index}]"))
        for index, entry in enumerate(data.get("stage_rules") or []):
            rules.append(_stage_rule_from_dict(entry, f"{path}: stage_rules[{index}]"))
        try:
            return cls(rules)
        except ValueError as e:
            raise RuleConfigError(f"{path}: {e}") from e

    def lookup(self, field: str, target_value: str) -> TransitionRule | None:
        return self._rules.get((field, target_value))

    def rules_for_field(self, field: str) -> tuple[TransitionRule, ...]:
        """All rules guarding values of one field, in registration order."""
        return tuple(rule for (f, _), rule in self._rules.items() if f == field)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules.values())

    def __contains__(self, key: object) -> bool:
        return key in self._rules


# ─── YAML Decoding ────────────────────────────────────────────────────────────


def _require(entry: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in entry or entry[key] in (None, ""):
        raise RuleConfigError(f"{where}: missing required key {key!r}")
    return entry[key]


def _str_tuple(value: Any, where: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RuleConfigError(f"{where}: expected a string or list of strings, got {value!r}")
    return tuple(value)


def _async_check_from_dict(entry: Any, where: str) -> AsyncCheck | None:
    if entry is None:
        return None
    if not isinstance(entry, dict):
        raise RuleConfigError(f"{where}: async_check must be a mapping")
    return AsyncCheck(
        relation=_require(entry, "relation", where),
        link_field=_require(entry, "link_field", where),
        required_documents=_str_tuple(_require(entry, "required_documents", where), where),
    )


def _status_rule_from_dict(entry: Any, where: str) -> StatusChangeRule:
    if not isinstance(entry, dict):
        raise RuleConfigError(f"{where}: rule must be a mapping")
    raw_kind = entry.get("action_kind", ActionKind.NONE.value)
    try:
        action_kind = ActionKind(raw_kind)
    except ValueError:
        valid = sorted(k.value for k in ActionKind)
        raise RuleConfigError(f"{where}: unknown action_kind {raw_kind!r}; valid: {valid}") from None
    return StatusChangeRule(
        field=_require(entry, "field", where),
        target_value=str(_require(entry, "target_value", where)),
        message=_require(entry, "message", where),
        requires=_str_tuple(entry.get("requires", []), where),
        action_kind=action_kind,
        action_label=entry.get("action_label"),
        bypassable=bool(entry.get("bypassable", False)),
        async_check=_async_check_from_dict(entry.get("async_check"), where),
    )


def _stage_rule_from_dict(entry: Any, where: str) -> StageRule:
    if not isinstance(entry, dict):
        raise RuleConfigError(f"{where}: rule must be a mapping")
    waiver = None
    raw_waiver = entry.get("waived_by")
    if raw_waiver is not None:
        if not isinstance(raw_waiver, dict):
            raise RuleConfigError(f"{where}: waived_by must be a mapping")
        waiver = Waiver(
            field=_require(raw_waiver, "field", where),
            values=_str_tuple(_require(raw_waiver, "values", where), where),
        )
    return StageRule(
        field=_require(entry, "field", where),
        target_value=str(_require(entry, "target_value", where)),
        message=_require(entry, "message", where),
        requires=_str_tuple(entry.get("requires", []), where),
        waived_by=waiver,
        async_check=_async_check_from_dict(entry.get("async_check"), where),
    )
