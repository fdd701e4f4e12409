"""Loan status transition engine: public API.

Validates proposed field changes on loan records against a rule catalogue,
applies permitted changes, and queues the email automations a change
triggers after the caller confirms.

Public API (re-exported from submodules):

Enums:
    RuleKind         — status_change, stage
    ActionKind       — none, upload_file, set_field, manual_review
    RecipientType    — borrower, buyer_agent, listing_agent, lender, team_member, title_contact
    TriggerType      — status_changed
    QueueStatus      — pending, sent, failed
    CoordinatorPhase — idle, validating, blocked, applying, dispatching,
                       awaiting_decision, done, cancelled, failed
    Resolution       — send_and_apply, apply_only, cancel

Frozen Dataclasses:
    FieldTransition, RecordSnapshot, AsyncCheck, Waiver,
    StatusChangeRule, StageRule (TransitionRule), ValidationOutcome,
    AutomationDefinition, AutomationQueueEntry

Rule Catalogue:
    STATUS_CHANGE_RULES, STAGE_RULES
    RuleRegistry        — immutable (field, value) -> rule lookup
    RuleConfigError     — malformed YAML rule configuration

Validation (from validation.py):
    evaluate(rule, snapshot)
    SyncValidator, AsyncValidator

Automations:
    AutomationMatcher    — active automations for a field change
    AutomationDispatcher — idempotent PENDING queue entries
    DispatchResult, DispatchOutcome

Coordination:
    ConfirmationStateMachine, ConfirmationState, TransitionError
    TransitionCoordinator, TransitionResult, TransitionOutcome, CoordinatorSettings

Collaborator Protocols (from interfaces.py):
    RecordStore, AutomationSource, AutomationQueue
    CheckExecutionError, PersistenceWriteError, QueueInsertError

In-memory implementations (from stores.py):
    InMemoryRecordStore, InMemoryAutomationSource, InMemoryAutomationQueue

Temporal (activities.py, workflow.py) is imported from its own modules so the
pure engine can be used without a worker.
"""

from loan_transitions.coordinator import (
    CoordinatorSettings,
    NoPendingDecisionError,
    TransitionCoordinator,
    TransitionOutcome,
    TransitionResult,
)
from loan_transitions.dispatcher import (
    AutomationDispatcher,
    DispatchOutcome,
    DispatchResult,
    QueueInsertFailure,
)
from loan_transitions.interfaces import (
    AutomationQueue,
    AutomationSource,
    CheckExecutionError,
    PersistenceWriteError,
    QueueInsertError,
    RecordStore,
)
from loan_transitions.matcher import AutomationMatcher
from loan_transitions.registry import RuleConfigError, RuleRegistry
from loan_transitions.state_machine import (
    ConfirmationState,
    ConfirmationStateMachine,
    StepRecord,
    TransitionError,
)
from loan_transitions.stores import (
    InMemoryAutomationQueue,
    InMemoryAutomationSource,
    InMemoryRecordStore,
    QueueStateError,
)
from loan_transitions.types import (
    FIELD_LABELS,
    RECIPIENT_LABELS,
    STAGE_RULES,
    STATUS_CHANGE_RULES,
    ActionKind,
    AsyncCheck,
    AutomationDefinition,
    AutomationQueueEntry,
    CoordinatorPhase,
    FieldTransition,
    QueueStatus,
    RecipientType,
    RecordSnapshot,
    Resolution,
    RuleKind,
    StageRule,
    StatusChangeRule,
    TransitionRule,
    TriggerType,
    ValidationOutcome,
    Waiver,
    field_label,
)
from loan_transitions.validation import AsyncValidator, SyncValidator, evaluate

__all__ = [
    # Enums
    "RuleKind",
    "ActionKind",
    "RecipientType",
    "TriggerType",
    "QueueStatus",
    "CoordinatorPhase",
    "Resolution",
    # Frozen dataclasses
    "FieldTransition",
    "RecordSnapshot",
    "AsyncCheck",
    "Waiver",
    "StatusChangeRule",
    "StageRule",
    "TransitionRule",
    "ValidationOutcome",
    "AutomationDefinition",
    "AutomationQueueEntry",
    # Catalogue and labels
    "STATUS_CHANGE_RULES",
    "STAGE_RULES",
    "FIELD_LABELS",
    "RECIPIENT_LABELS",
    "field_label",
    "RuleRegistry",
    "RuleConfigError",
    # Validation
    "evaluate",
    "SyncValidator",
    "AsyncValidator",
    # Automations
    "AutomationMatcher",
    "AutomationDispatcher",
    "DispatchOutcome",
    "DispatchResult",
    "QueueInsertFailure",
    # Coordination
    "ConfirmationState",
    "ConfirmationStateMachine",
    "StepRecord",
    "TransitionError",
    "TransitionCoordinator",
    "TransitionResult",
    "TransitionOutcome",
    "CoordinatorSettings",
    "NoPendingDecisionError",
    # Protocols and errors
    "RecordStore",
    "AutomationSource",
    "AutomationQueue",
    "CheckExecutionError",
    "PersistenceWriteError",
    "QueueInsertError",
    # In-memory implementations
    "InMemoryRecordStore",
    "InMemoryAutomationSource",
    "InMemoryAutomationQueue",
    "QueueStateError",
]
