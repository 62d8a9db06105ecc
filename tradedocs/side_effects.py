"""
tradedocs -- Side Effect Coordinator

Best-effort work fired after a lifecycle transition has been committed:

    - activity log entry (summary + structured metadata)
    - push notification to the business owner
    - accounting-system sync (remote invoice on send, remote payment on paid)

Tasks are queued explicitly on a SideEffectQueue and drained in order.  A
failing task is logged with its traceback and recorded as a failed outcome;
nothing is re-raised, so the committed transition always stands.

Usage:
    coordinator = SideEffectCoordinator(storage, notifications=push, accounting=xero)
    outcomes = coordinator.after_payment(invoice, business, client)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import SideEffectError
from .interfaces import AccountingSync, NotificationService, Storage
from .models import (
    ActivityEntry,
    BusinessProfile,
    Channel,
    Client,
    DeliveryAttempt,
    Document,
    LineItem,
)
from .templates import format_currency

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@dataclass
class SideEffectOutcome:
    name: str
    status: str                 # "ok" | "failed" | "skipped"
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass
class SideEffectTask:
    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


class SideEffectQueue:
    """Ordered, explicitly drained queue of best-effort tasks."""

    def __init__(self) -> None:
        self._tasks: list[SideEffectTask] = []
        self._skipped: list[SideEffectOutcome] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._tasks.append(SideEffectTask(name=name, fn=fn, args=args, kwargs=kwargs))

    def skip(self, name: str, reason: str) -> None:
        logger.debug("Side effect %s skipped: %s", name, reason)
        self._skipped.append(SideEffectOutcome(name=name, status="skipped", detail=reason))

    def drain(self) -> list[SideEffectOutcome]:
        """Run every queued task once.  Never raises."""
        outcomes = list(self._skipped)
        tasks, self._tasks, self._skipped = self._tasks, [], []

        for task in tasks:
            try:
                task.fn(*task.args, **task.kwargs)
            except Exception as exc:
                logger.warning("Side effect %s failed: %s", task.name, exc, exc_info=True)
                outcomes.append(SideEffectOutcome(name=task.name, status="failed", detail=str(exc)))
            else:
                outcomes.append(SideEffectOutcome(name=task.name, status="ok"))
        return outcomes


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class SideEffectCoordinator:
    """Builds and drains the fixed side-effect list for each transition.

    ``notifications`` and ``accounting`` are optional; when absent the
    matching tasks are recorded as skipped.
    """

    def __init__(
        self,
        storage: Storage,
        notifications: Optional[NotificationService] = None,
        accounting: Optional[AccountingSync] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.notifications = notifications
        self.accounting = accounting
        self._clock = clock

    # ------------------------------------------------------------------
    # Per-transition task lists
    # ------------------------------------------------------------------

    def after_send(
        self,
        document: Document,
        business: BusinessProfile,
        client: Client,
        channel_used: Optional[Channel],
        attempts: list[DeliveryAttempt],
        line_items: list[LineItem],
        forced: bool = False,
    ) -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        verb = "resent" if forced else "sent"
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type=f"{document.kind.value}_sent",
            title=f"{document.display_name} {verb}",
            description=f"Sent to {client.name}",
            metadata={
                "number": document.number,
                "total": str(document.total),
                "channel": channel_used.value if channel_used else None,
                "attempts": [a.to_dict() for a in attempts],
                "forced": forced,
            },
        ))
        if document.is_invoice:
            self._queue_invoice_sync(queue, document, business, line_items)
        return queue.drain()

    def after_payment(
        self,
        document: Document,
        business: BusinessProfile,
        client: Optional[Client],
        receipt_sent: bool = False,
    ) -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        amount = document.paid_amount if document.paid_amount is not None else document.total
        client_name = client.name if client else "client"

        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type="payment_received",
            title=f"Payment received: {document.display_name}",
            description=f"{format_currency(amount)} received from {client_name}",
            metadata={
                "number": document.number,
                "amount": str(amount),
                "method": document.payment_method,
                "receipt_sent": receipt_sent,
            },
        ))
        self._queue_push(
            queue, business, "payment_received", "Payment Received!",
            f"{format_currency(amount)} received for invoice {document.number}",
            {"document_id": document.id},
        )
        self._queue_payment_sync(queue, document, business, amount)
        return queue.drain()

    def after_acceptance(self, document: Document, business: BusinessProfile, client: Optional[Client]) -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        client_name = client.name if client else "Your client"
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type="quote_accepted",
            title=f"{document.display_name} accepted",
            description=f"Accepted by {document.accepted_by or client_name}",
            metadata={"number": document.number, "total": str(document.total),
                      "signature_ref": document.signature_ref},
        ))
        self._queue_push(
            queue, business, "quote_accepted", "Quote Accepted!",
            f"{client_name} accepted quote {document.number} ({format_currency(document.total)})",
            {"document_id": document.id},
        )
        return queue.drain()

    def after_decline(self, document: Document, business: BusinessProfile, client: Optional[Client]) -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        client_name = client.name if client else "Your client"
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type="quote_declined",
            title=f"{document.display_name} declined",
            description=document.decline_reason or f"Declined by {client_name}",
            metadata={"number": document.number, "reason": document.decline_reason},
        ))
        self._queue_push(
            queue, business, "quote_declined", "Quote Declined",
            f"{client_name} declined quote {document.number}",
            {"document_id": document.id},
        )
        return queue.drain()

    def after_cancel(self, document: Document, business: BusinessProfile, reason: str = "") -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type=f"{document.kind.value}_cancelled",
            title=f"{document.display_name} cancelled",
            description=reason,
            metadata={"number": document.number},
        ))
        return queue.drain()

    def after_reminder(
        self,
        document: Document,
        business: BusinessProfile,
        tier: Optional[int],
        days_past_due: int,
        channels: list[Channel],
        manual: bool = False,
    ) -> list[SideEffectOutcome]:
        queue = SideEffectQueue()
        via = ", ".join(c.value for c in channels) or "no channel"
        label = "Manual reminder" if manual else f"{tier}-day reminder"
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type="manual_reminder" if manual else "reminder_sent",
            title=f"Reminder sent: {document.display_name}",
            description=f"{label}, {days_past_due} days overdue, via {via}",
            metadata={
                "tier": tier,
                "days_past_due": days_past_due,
                "channels": [c.value for c in channels],
            },
        ))
        if not manual:
            self._queue_push(
                queue, business, "invoice_overdue", "Invoice Overdue",
                f"Invoice {document.number} is {days_past_due} days overdue",
                {"document_id": document.id, "tier": tier},
            )
        return queue.drain()

    def record_delivery_failure(
        self,
        document: Document,
        business: BusinessProfile,
        attempts: list[DeliveryAttempt],
        error_title: str,
    ) -> list[SideEffectOutcome]:
        """Log the failed attempts of a send that did not change state."""
        queue = SideEffectQueue()
        queue.submit("activity", self._write_activity, ActivityEntry(
            business_id=business.id,
            document_id=document.id,
            type="delivery_failed",
            title=f"{document.display_name} couldn't be sent",
            description=error_title,
            metadata={"attempts": [a.to_dict() for a in attempts]},
        ))
        return queue.drain()

    # ------------------------------------------------------------------
    # Task builders
    # ------------------------------------------------------------------

    def _queue_push(
        self,
        queue: SideEffectQueue,
        business: BusinessProfile,
        category: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        if self.notifications is None:
            queue.skip("push", "no notification service")
        elif not business.owner_id:
            queue.skip("push", "business has no owner to notify")
        else:
            queue.submit("push", self.notifications.notify, business.owner_id, category, title, body, data)

    def _queue_invoice_sync(
        self,
        queue: SideEffectQueue,
        document: Document,
        business: BusinessProfile,
        line_items: list[LineItem],
    ) -> None:
        if self.accounting is None or not business.accounting_connected:
            queue.skip("accounting_invoice", "accounting not connected")
        elif document.accounting_id:
            queue.skip("accounting_invoice", "already synced")
        else:
            queue.submit("accounting_invoice", self._sync_invoice, document, line_items)

    def _queue_payment_sync(self, queue: SideEffectQueue, document: Document, business: BusinessProfile, amount) -> None:
        if self.accounting is None or not business.accounting_connected:
            queue.skip("accounting_payment", "accounting not connected")
        elif not document.accounting_id:
            queue.skip("accounting_payment", "invoice was never synced")
        else:
            queue.submit("accounting_payment", self._sync_payment, document.accounting_id, amount)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _write_activity(self, entry: ActivityEntry) -> None:
        if entry.created_at is None:
            entry.created_at = self._clock()
        self.storage.add_activity(entry)

    def _sync_invoice(self, document: Document, line_items: list[LineItem]) -> None:
        result = self.accounting.create_remote_invoice(document, line_items)
        if not result.success:
            raise SideEffectError("accounting_invoice", str(result.error or "unknown error"))
        if result.remote_id and result.remote_id != document.accounting_id:
            self.storage.set_accounting_id(document.id, result.remote_id)
            document.accounting_id = result.remote_id

    def _sync_payment(self, remote_id: str, amount) -> None:
        result = self.accounting.create_remote_payment(remote_id, amount)
        if not result.success:
            raise SideEffectError("accounting_payment", str(result.error or "unknown error"))
