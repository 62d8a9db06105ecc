"""tradedocs - Quote and invoice lifecycle with multi-channel delivery.

Drives quotes and invoices through draft -> sent -> accepted / paid,
delivering each document over the business's own mailbox or a provider
fallback, and escalates overdue invoices with tiered email / SMS reminders.

The DocumentStateMachine owns state writes; SQLiteStorage persists
documents, the reminder log and the activity log.
"""

from .errors import (
    ActionInProgress,
    AlreadyInTargetState,
    DeliveryFailed,
    DocumentPreparationError,
    InvalidSignature,
    InvalidTransition,
    LifecycleError,
    MissingBusinessProfile,
    MissingContactInfo,
    NotFound,
)
from .models import (
    BusinessProfile,
    Channel,
    Client,
    DeliveryMode,
    Document,
    DocumentKind,
    DocumentStatus,
    LineItem,
    ReminderTone,
    Signature,
)
from .reminders import ReminderEscalationEngine
from .state_machine import DocumentStateMachine, TransitionResult, effective_status
from .storage import SQLiteStorage

__all__ = [
    "ActionInProgress",
    "AlreadyInTargetState",
    "BusinessProfile",
    "Channel",
    "Client",
    "DeliveryFailed",
    "DeliveryMode",
    "Document",
    "DocumentKind",
    "DocumentPreparationError",
    "DocumentStateMachine",
    "DocumentStatus",
    "InvalidSignature",
    "InvalidTransition",
    "LifecycleError",
    "LineItem",
    "MissingBusinessProfile",
    "MissingContactInfo",
    "NotFound",
    "ReminderEscalationEngine",
    "ReminderTone",
    "SQLiteStorage",
    "Signature",
    "TransitionResult",
    "effective_status",
]
