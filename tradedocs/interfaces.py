"""Collaborator interfaces consumed by the lifecycle core.

Concrete implementations are passed in by the caller (see ``main.build_services``
for the local defaults).  Nothing in the core holds a module-level instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Protocol

from .error_classifier import ProviderError
from .models import (
    ActivityEntry,
    BusinessProfile,
    Client,
    Document,
    DocumentStatus,
    LineItem,
    OutboundMessage,
    ReminderLog,
    Signature,
)


# ---------------------------------------------------------------------------
# Typed results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelResult:
    success: bool
    provider_error: Optional[ProviderError] = None
    reference: str = ""          # draft id / message id when the provider returns one

    @classmethod
    def ok(cls, reference: str = "") -> ChannelResult:
        return cls(success=True, reference=reference)

    @classmethod
    def failed(cls, message: str, code: str | None = None, provider: str = "") -> ChannelResult:
        return cls(success=False, provider_error=ProviderError(message, code, provider))


@dataclass(frozen=True)
class AccountingResult:
    success: bool
    remote_id: Optional[str] = None
    error: Optional[ProviderError] = None


# ---------------------------------------------------------------------------
# Document rendering / artifacts
# ---------------------------------------------------------------------------

class Renderer(Protocol):
    content_type: str
    extension: str

    def render(
        self,
        document: Document,
        business: BusinessProfile,
        line_items: list[LineItem],
        extras: dict[str, Any],
    ) -> bytes: ...


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def get(self, path_ref: str) -> bytes: ...


# ---------------------------------------------------------------------------
# Delivery providers
# ---------------------------------------------------------------------------

class DraftClient(Protocol):
    """Creates an editable draft for a human to review and send."""

    def create_draft(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult: ...


class DirectSendClient(Protocol):
    """Sends immediately through a transactional email provider."""

    def send(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult: ...


class SmsClient(Protocol):
    def send(self, e164_number: str, text: str) -> ChannelResult: ...


# ---------------------------------------------------------------------------
# Best-effort collaborators
# ---------------------------------------------------------------------------

class AccountingSync(Protocol):
    def create_remote_invoice(self, document: Document, line_items: list[LineItem]) -> AccountingResult: ...

    def create_remote_payment(self, remote_id: str, amount: Decimal) -> AccountingResult: ...


class NotificationService(Protocol):
    def notify(self, user_id: str, category: str, title: str, body: str, data: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class Storage(Protocol):
    def get_document(self, document_id: str) -> Optional[Document]: ...

    def save_document(self, document: Document) -> None: ...

    def transition_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        new: DocumentStatus,
        **fields: Any,
    ) -> bool: ...

    def set_accounting_id(self, document_id: str, remote_id: str) -> None: ...

    def list_overdue_invoices(self, business_id: str, today: date) -> list[Document]: ...

    def get_line_items(self, document_id: str) -> list[LineItem]: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def get_business(self, business_id: str) -> Optional[BusinessProfile]: ...

    def list_businesses(self) -> list[BusinessProfile]: ...

    def save_signature(self, document_id: str, signature: Signature) -> str: ...

    def delete_signature(self, ref: str) -> None: ...

    def has_reminder(self, document_id: str, tier: int) -> bool: ...

    def record_reminder(self, log: ReminderLog) -> bool: ...

    def add_activity(self, entry: ActivityEntry) -> int: ...

    def acquire_claim(self, document_id: str, action: str, ttl_seconds: int) -> bool: ...

    def release_claim(self, document_id: str, action: str) -> None: ...
