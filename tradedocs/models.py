"""Data models for the tradedocs lifecycle core.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
storage adapters convert rows to and from these objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DocumentKind(str, Enum):
    QUOTE = "quote"
    INVOICE = "invoice"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class DocumentStatus(str, Enum):
    """Lifecycle status of a quote or invoice.

    OVERDUE and EXPIRED are never written to storage; they are derived
    from the due / valid-until date by ``effective_status``.
    """

    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class DeliveryMode(str, Enum):
    """How a business wants outbound email handled."""

    MANUAL_REVIEW = "manual-review"
    AUTOMATIC_SEND = "automatic-send"


class Channel(str, Enum):
    SMTP = "smtp"
    DRAFT = "draft"
    DIRECT = "direct"
    SMS = "sms"


class ReminderTone(str, Enum):
    FRIENDLY = "friendly"
    PROFESSIONAL = "professional"
    FIRM = "firm"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@dataclass
class LineItem:
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")

    @property
    def amount(self) -> Decimal:
        return (self.quantity * self.unit_price).quantize(Decimal("0.01"))


@dataclass
class Document:
    """A quote or invoice owned by a business."""

    id: str
    kind: DocumentKind
    number: str
    client_id: str
    business_id: str
    total: Decimal = Decimal("0.00")
    status: DocumentStatus = DocumentStatus.DRAFT
    title: str = ""

    # Dates that drive the computed statuses
    due_date: Optional[date] = None          # invoices
    valid_until: Optional[date] = None       # quotes

    # Transition timestamps
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # Links
    job_id: Optional[str] = None
    accounting_id: Optional[str] = None

    # Acceptance / payment metadata
    accepted_by: Optional[str] = None
    signature_ref: Optional[str] = None
    decline_reason: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None

    @property
    def is_invoice(self) -> bool:
        return self.kind is DocumentKind.INVOICE

    @property
    def is_quote(self) -> bool:
        return self.kind is DocumentKind.QUOTE

    @property
    def display_name(self) -> str:
        """'Invoice #1001' style label used in activity entries and pushes."""
        return f"{self.kind.label} #{self.number}"


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------

@dataclass
class Client:
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: str = ""


@dataclass
class EmailConnection:
    """A business's own mailbox, used for SMTP delivery."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_address: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username)


@dataclass
class AccountingConnection:
    provider: str = ""
    tenant_id: str = ""
    connected: bool = False


@dataclass
class ReminderSettings:
    """Per-business overrides for the escalation engine."""

    enabled: bool = True
    tiers: list[int] = field(default_factory=lambda: [7, 14, 30])
    tone: ReminderTone = ReminderTone.FRIENDLY
    sms_enabled: bool = False


@dataclass
class BusinessProfile:
    id: str
    name: str
    owner_id: str = ""
    email: Optional[str] = None
    phone: str = ""
    abn: str = ""
    address: str = ""
    brand_color: str = "#1f2937"
    preferred_delivery_mode: DeliveryMode = DeliveryMode.MANUAL_REVIEW
    email_connection: Optional[EmailConnection] = None
    accounting_connection: Optional[AccountingConnection] = None
    reminder_settings: Optional[ReminderSettings] = None

    @property
    def has_smtp(self) -> bool:
        return self.email_connection is not None and self.email_connection.is_configured

    @property
    def accounting_connected(self) -> bool:
        return self.accounting_connection is not None and self.accounting_connection.connected


@dataclass
class Signature:
    """Client-supplied acceptance or decline signature."""

    signer_name: str
    signature_data: str
    ip_address: Optional[str] = None
    signed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Messages and attachments
# ---------------------------------------------------------------------------

@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass
class ArtifactRef:
    """A rendered document persisted in the artifact store."""

    key: str
    path_ref: str
    filename: str
    content_type: str
    content: bytes = b""

    def as_attachment(self) -> Attachment:
        return Attachment(
            filename=self.filename,
            content=self.content,
            content_type=self.content_type,
        )


@dataclass
class OutboundMessage:
    to: str
    subject: str
    html: str
    text: str = ""
    from_name: str = ""
    reply_to: str = ""
    attachments: list[Attachment] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

@dataclass
class DeliveryAttempt:
    """One channel attempt.  Not persisted on its own; kept in activity metadata."""

    channel: Channel
    success: bool
    timestamp: datetime
    classified_error: Optional[Any] = None    # ClassifiedError

    def to_dict(self) -> dict:
        err = self.classified_error
        return {
            "channel": self.channel.value,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "error": err.category.value if err is not None else None,
            "error_detail": err.raw if err is not None else None,
        }


@dataclass
class ReminderLog:
    document_id: str
    tier: int
    sent_at: datetime
    channels_used: list[Channel] = field(default_factory=list)

    @property
    def sent_via(self) -> Optional[str]:
        """'both' / 'email' / 'sms' / None, as shown in the reminder history."""
        email = any(c is not Channel.SMS for c in self.channels_used)
        sms = Channel.SMS in self.channels_used
        if email and sms:
            return "both"
        if email:
            return "email"
        if sms:
            return "sms"
        return None


@dataclass
class ActivityEntry:
    business_id: str
    type: str
    title: str
    description: str = ""
    document_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None
