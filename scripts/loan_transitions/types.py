"""Type definitions for the loan status transition engine.

All enums are str Enums for JSON/Temporal serialization compatibility.
All rule and record dataclasses are frozen so they can be shared between the
registry, validators and the coordinator without defensive copies.

The canonical rule catalogue (STATUS_CHANGE_RULES, STAGE_RULES) lives at the
bottom of this module. It is an immutable tuple; registries are built from it
explicitly (see registry.RuleRegistry.default()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Union


# ─── Enums ────────────────────────────────────────────────────────────────────


class RuleKind(str, Enum):
    """Discriminant for the TransitionRule tagged variant."""

    STATUS_CHANGE = "status_change"
    STAGE = "stage"


class ActionKind(str, Enum):
    """Remediation the caller must perform before re-attempting a blocked change."""

    NONE = "none"
    UPLOAD_FILE = "upload_file"
    SET_FIELD = "set_field"
    MANUAL_REVIEW = "manual_review"


class RecipientType(str, Enum):
    """Who an email automation is addressed to."""

    BORROWER = "borrower"
    BUYER_AGENT = "buyer_agent"
    LISTING_AGENT = "listing_agent"
    LENDER = "lender"
    TEAM_MEMBER = "team_member"
    TITLE_CONTACT = "title_contact"


class TriggerType(str, Enum):
    """Automation trigger types. Only field changes are handled by this engine."""

    STATUS_CHANGED = "status_changed"


class QueueStatus(str, Enum):
    """Lifecycle of an AutomationQueueEntry. Only the notifier moves it off PENDING."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class CoordinatorPhase(str, Enum):
    """States of one transition attempt in the confirmation protocol.

    DONE, CANCELLED and FAILED are terminal.
    """

    IDLE = "idle"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    APPLYING = "applying"
    DISPATCHING = "dispatching"
    AWAITING_DECISION = "awaiting_decision"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Resolution(str, Enum):
    """Caller's answer when a committed change matched automations."""

    SEND_AND_APPLY = "send_and_apply"
    APPLY_ONLY = "apply_only"
    CANCEL = "cancel"


# ─── Transition + Snapshot ────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldTransition:
    """A proposed change of one field on one record.

    attempt_id identifies the coordinator run the transition belongs to; it
    scopes queue idempotency keys to a single transition.
    """

    record_id: str
    field: str
    to_value: str
    from_value: str | None = None
    attempt_id: str = ""


@dataclass(frozen=True)
class RecordSnapshot:
    """Read-only projection of the record fields a rule predicate needs.

    values holds a read-only copy of the raw field values as read from the
    record store. A field is "populated" when it is present, not None and, for
    strings, not blank.
    """

    record_id: str
    values: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, name: str) -> Any:
        return self.values.get(name)

    def is_populated(self, name: str) -> bool:
        value = self.values.get(name)
        if value is None or value is False:
            return False
        if isinstance(value, str):
            return value.strip() != ""
        return True


# ─── Rule Variants ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AsyncCheck:
    """Precondition that needs a read beyond the caller's snapshot.

    The related entity is referenced from the record by link_field (e.g. the
    record's condo_id). The check passes when the related entity carries every
    document named in required_documents.
    """

    relation: str
    link_field: str
    required_documents: tuple[str, ...]


@dataclass(frozen=True)
class Waiver:
    """Snapshot condition under which a stage rule's requirements do not apply."""

    field: str
    values: tuple[str, ...]

    def applies_to(self, snapshot: RecordSnapshot) -> bool:
        return snapshot.get(self.field) in self.values


@dataclass(frozen=True)
class StatusChangeRule:
    """Precondition for setting a status field to a specific value.

    requires lists the snapshot fields that must be populated. action_kind and
    action_label describe the remediation offered when the rule blocks.
    bypassable rules may be overridden by an explicit, attributed bypass.
    """

    field: str
    target_value: str
    message: str
    requires: tuple[str, ...]
    action_kind: ActionKind = ActionKind.NONE
    action_label: str | None = None
    bypassable: bool = False
    async_check: AsyncCheck | None = None
    kind: RuleKind = RuleKind.STATUS_CHANGE

    def __post_init__(self) -> None:
        if self.kind != RuleKind.STATUS_CHANGE:
            raise ValueError(f"StatusChangeRule requires kind={RuleKind.STATUS_CHANGE.value!r}")


@dataclass(frozen=True)
class StageRule:
    """Precondition for moving a record into a pipeline stage.

    Stage rules carry no remediation action and are never bypassable. A Waiver
    makes the predicate hold outright (refinances need no purchase contract).
    """

    field: str
    target_value: str
    message: str
    requires: tuple[str, ...]
    waived_by: Waiver | None = None
    async_check: AsyncCheck | None = None
    kind: RuleKind = RuleKind.STAGE

    def __post_init__(self) -> None:
        if self.kind != RuleKind.STAGE:
            raise ValueError(f"StageRule requires kind={RuleKind.STAGE.value!r}")

    @property
    def bypassable(self) -> bool:
        return False

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind.NONE

    @property
    def action_label(self) -> str | None:
        return None


TransitionRule = Union[StatusChangeRule, StageRule]


# ─── Validation Outcome ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of evaluating one transition. Produced and consumed within one run.

    is_valid=False always carries the violated rule. warnings is non-empty when
    an asynchronous check could not run and the transition was permitted
    anyway (fail-open). bypassed is True when the predicate was skipped by an
    explicit override.
    """

    is_valid: bool
    rule: TransitionRule | None = None
    reason: str | None = None
    missing_fields: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    bypassed: bool = False


# ─── Automations ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AutomationDefinition:
    """An email automation fired when a field is set to a trigger value."""

    id: str
    name: str
    recipient_type: RecipientType
    trigger_field: str
    trigger_target_value: str
    template_id: str | None = None
    active: bool = True
    trigger_type: TriggerType = TriggerType.STATUS_CHANGED


@dataclass(frozen=True)
class AutomationQueueEntry:
    """One automation scheduled for sending for one transition.

    Created PENDING by the dispatcher; only the external notifier moves it to
    SENT or FAILED (see stores.InMemoryAutomationQueue.mark_sent/mark_failed).
    """

    id: str
    automation_id: str
    record_id: str
    field: str
    old_value: str | None
    new_value: str
    triggered_by: str
    triggered_at: datetime
    idempotency_key: str
    status: QueueStatus = QueueStatus.PENDING
    sent_at: datetime | None = None
    error: str | None = None


# ─── Labels ───────────────────────────────────────────────────────────────────

FIELD_LABELS: dict[str, str] = {
    "loan_status": "Loan Status",
    "disclosure_status": "Disclosure Status",
    "cd_status": "CD Status",
    "appraisal_status": "Appraisal Status",
    "title_status": "Title Status",
    "hoi_status": "HOI Status",
    "insurance_status": "Insurance Status",
    "condo_status": "Condo Status",
    "package_status": "Package Status",
    "epo_status": "EPO Status",
    "pipeline_stage": "Pipeline Stage",
}

RECIPIENT_LABELS: dict[RecipientType, str] = {
    RecipientType.BORROWER: "Borrower",
    RecipientType.BUYER_AGENT: "Buyer's Agent",
    RecipientType.LISTING_AGENT: "Listing Agent",
    RecipientType.LENDER: "Lender AE",
    RecipientType.TEAM_MEMBER: "Team Member",
    RecipientType.TITLE_CONTACT: "Title Contact",
}


def field_label(field_name: str) -> str:
    """Human-readable label for a record field.

    Known fields use FIELD_LABELS; anything else is title-cased from snake_case
    ("lock_expiration_date" -> "Lock Expiration Date").
    """
    if field_name in FIELD_LABELS:
        return FIELD_LABELS[field_name]
    return " ".join(word[:1].upper() + word[1:] for word in field_name.split("_"))


# ─── Canonical Rule Catalogue ─────────────────────────────────────────────────

CONDO_DOCUMENTS_CHECK = AsyncCheck(
    relation="condo",
    link_field="condo_id",
    required_documents=("budget_doc", "mip_doc", "cq_doc"),
)


def _upload(field_name: str, value: str, requires: str, message: str, label: str) -> StatusChangeRule:
    return StatusChangeRule(
        field=field_name,
        target_value=value,
        message=message,
        requires=(requires,),
        action_kind=ActionKind.UPLOAD_FILE,
        action_label=label,
    )


STATUS_CHANGE_RULES: tuple[StatusChangeRule, ...] = (
    _upload(
        "disclosure_status", "Ordered", "disc_file",
        "You must upload a Disclosure document before setting status to Ordered",
        "Upload Disclosure Package",
    ),
    _upload(
        "disclosure_status", "Sent", "disc_file",
        "You must upload a Disclosure document before setting status to Sent",
        "Upload Disclosure Package",
    ),
    _upload(
        "disclosure_status", "Signed", "disc_file",
        "Upload the signed disclosures to change status to Signed",
        "Upload Signed Disclosures",
    ),
    _upload(
        "loan_status", "AWC", "initial_approval_file",
        "Upload the initial approval to change status to AWC",
        "Upload Initial Approval",
    ),
    StatusChangeRule(
        field="appraisal_status",
        target_value="Scheduled",
        message="Set the appraisal date/time to change status to Scheduled",
        requires=("appr_date_time",),
        action_kind=ActionKind.SET_FIELD,
        action_label="Set Appraisal Date/Time",
    ),
    _upload(
        "appraisal_status", "Received", "appraisal_file",
        "Upload the appraisal report to change status to Received",
        "Upload Appraisal Report",
    ),
    StatusChangeRule(
        field="title_status",
        target_value="Ordered",
        message="Enter a Title ETA before setting status to Ordered",
        requires=("title_eta",),
        action_kind=ActionKind.SET_FIELD,
        action_label="Set Title ETA",
    ),
    _upload(
        "title_status", "Received", "title_file",
        "Upload the title work to change status to Received",
        "Upload Title File",
    ),
    _upload(
        "hoi_status", "Received", "insurance_policy_file",
        "Upload the HOI policy to change status to Received",
        "Upload HOI Policy",
    ),
    _upload(
        "insurance_status", "Received", "insurance_file",
        "Upload the HOI policy to change status to Received",
        "Upload HOI Policy",
    ),
    _upload(
        "package_status", "Final", "fcp_file",
        "Upload the final closing package to change status to Final",
        "Upload Final Closing Package",
    ),
    StatusChangeRule(
        field="condo_status",
        target_value="Ordered",
        message="Enter Order Date and ETA before setting status to Ordered",
        requires=("condo_ordered_date", "condo_eta"),
        action_kind=ActionKind.SET_FIELD,
        action_label="Set Order Details",
    ),
    StatusChangeRule(
        field="condo_status",
        target_value="Received",
        message="All condo documents (budget, MIP, questionnaire) must be on file to change status to Received",
        requires=("condo_id",),
        action_kind=ActionKind.UPLOAD_FILE,
        action_label="Upload Condo Documents",
        async_check=CONDO_DOCUMENTS_CHECK,
    ),
    _upload(
        "condo_status", "Approved", "condo_file",
        "Upload condo documents to change status to Approved",
        "Upload Condo Documents",
    ),
)

STAGE_RULES: tuple[StageRule, ...] = (
    StageRule(
        field="pipeline_stage",
        target_value="pending-app",
        message="Please update Lead Strength and Likely to Apply before moving to Pending App",
        requires=("lead_strength", "likely_to_apply"),
    ),
    StageRule(
        field="pipeline_stage",
        target_value="active",
        message="Please upload a contract before moving to Active pipeline",
        requires=("contract_file",),
        waived_by=Waiver(field="pr_type", values=("R", "HELOC")),
    ),
)
