"""
tradedocs -- Document State Machine

Owns the legal lifecycle transitions and performs the state writes that are
the single source of truth for "did this action happen":

    quote   : draft -> sent -> accepted | declined        (expired: computed)
    invoice : draft -> sent -> paid, draft -> paid        (overdue: computed)
              draft | sent -> cancelled

Ordering per action:

    send      guard -> preconditions -> claim -> render -> deliver -> write -> side effects
    mark_paid guard -> preconditions -> write -> receipt (best effort) -> side effects
    accept /  guard -> preconditions -> signature -> write -> side effects
    decline

Preconditions raise a typed LifecycleError before anything is rendered,
delivered or written.  Every write is compare-and-set against the status
read at the start of the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .attachments import AttachmentPipeline
from .config import DeliverySettings
from .contacts import reachable_email
from .delivery import DeliveryOrchestrator
from .error_classifier import preparation_error
from .errors import (
    ActionInProgress,
    DeliveryFailed,
    DocumentPreparationError,
    InvalidSignature,
    InvalidTransition,
    MissingBusinessProfile,
    MissingContactInfo,
    NotFound,
    UserMessage,
)
from .idempotency import Action, IdempotencyGuard
from .interfaces import Storage
from .models import (
    BusinessProfile,
    Channel,
    Client,
    DeliveryAttempt,
    Document,
    DocumentKind,
    DocumentStatus,
    Signature,
)
from .side_effects import SideEffectCoordinator, SideEffectOutcome
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Transition graph (stored statuses only)
# ---------------------------------------------------------------------------

TRANSITIONS: dict[DocumentKind, dict[DocumentStatus, set[DocumentStatus]]] = {
    DocumentKind.QUOTE: {
        DocumentStatus.DRAFT: {DocumentStatus.SENT},
        DocumentStatus.SENT: {DocumentStatus.SENT, DocumentStatus.ACCEPTED, DocumentStatus.DECLINED},
    },
    DocumentKind.INVOICE: {
        DocumentStatus.DRAFT: {DocumentStatus.SENT, DocumentStatus.PAID, DocumentStatus.CANCELLED},
        DocumentStatus.SENT: {DocumentStatus.SENT, DocumentStatus.PAID, DocumentStatus.CANCELLED},
    },
}


def can_transition(kind: DocumentKind, current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in TRANSITIONS[kind].get(current, set())


def effective_status(document: Document, today: date) -> DocumentStatus:
    """Stored status, with overdue / expired derived from the calendar."""
    if document.status is DocumentStatus.SENT:
        if document.is_invoice and document.due_date and document.due_date < today:
            return DocumentStatus.OVERDUE
        if document.is_quote and document.valid_until and document.valid_until < today:
            return DocumentStatus.EXPIRED
    return document.status


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class TransitionResult:
    """Outcome of a lifecycle action that was carried out.

    Failures never produce a TransitionResult; they raise.  ``warnings``
    carry post-commit problems such as a receipt that couldn't be sent.
    """

    document: Document
    action: Action
    message: str
    channel_used: Optional[Channel] = None
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    warnings: list[UserMessage] = field(default_factory=list)
    side_effects: list[SideEffectOutcome] = field(default_factory=list)
    status_changed: bool = True

    @property
    def success(self) -> bool:
        return True

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "action": self.action.value,
            "document_id": self.document.id,
            "status": self.document.status.value,
            "message": self.message,
            "channel_used": self.channel_used.value if self.channel_used else None,
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ===========================================================================
# State machine
# ===========================================================================

class DocumentStateMachine:
    """Drives quotes and invoices through their lifecycle.

    All collaborators are injected and scoped to the caller; the instance
    holds no document state between calls.
    """

    def __init__(
        self,
        storage: Storage,
        templates: TemplateEngine,
        attachments: AttachmentPipeline,
        delivery: DeliveryOrchestrator,
        side_effects: SideEffectCoordinator,
        guard: IdempotencyGuard | None = None,
        settings: DeliverySettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.templates = templates
        self.attachments = attachments
        self.delivery = delivery
        self.side_effects = side_effects
        self.guard = guard or IdempotencyGuard()
        self.settings = settings or DeliverySettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Shared precondition helpers
    # ------------------------------------------------------------------

    def _load(self, document_id: str, kind: DocumentKind | None = None) -> Document:
        document = self.storage.get_document(document_id)
        label = kind.label if kind else "Document"
        if document is None:
            raise NotFound.document(label)
        if kind is not None and document.kind is not kind:
            raise NotFound.document(label)
        return document

    def _business(self, document: Document) -> BusinessProfile:
        business = self.storage.get_business(document.business_id)
        if business is None:
            raise MissingBusinessProfile.profile()
        return business

    def _client(self, document: Document) -> Client:
        client = self.storage.get_client(document.client_id)
        if client is None:
            raise NotFound.client(document.kind.label)
        return client

    def _reject_transition(self, document: Document, action: Action) -> InvalidTransition:
        current = effective_status(document, self._clock().date())
        return InvalidTransition.between(document.kind.label, current.value, action.value)

    def _reload(self, document: Document) -> Document:
        return self.storage.get_document(document.id) or document

    # ------------------------------------------------------------------
    # send
    # ------------------------------------------------------------------

    def send(
        self,
        document_id: str,
        force: bool = False,
        custom_subject: str | None = None,
        custom_message: str | None = None,
        allow_without_attachment: bool | None = None,
        skip_delivery: bool = False,
    ) -> TransitionResult:
        """Deliver a quote or invoice and mark it sent.

        Args:
            document_id: The quote or invoice to send.
            force: Resend a document that has already been sent.
            custom_subject: Overrides the default subject line.
            custom_message: Overrides the default opening paragraph.
            allow_without_attachment: Deliver without the rendered document
                if it can't be prepared.  Defaults to the configured policy.
            skip_delivery: Mark as sent without delivering (the owner sent
                it from their own mail client).

        Returns:
            TransitionResult with the channel that delivered the message.

        Raises:
            NotFound, AlreadyInTargetState, InvalidTransition,
            MissingContactInfo, MissingBusinessProfile, ActionInProgress:
                Preconditions; nothing was rendered or delivered.
            DocumentPreparationError: Rendering failed and degraded delivery
                was not allowed.
            DeliveryFailed: Every channel failed; the status is unchanged.
        """
        document = self._load(document_id)
        if document.status is DocumentStatus.CANCELLED:
            raise self._reject_transition(document, Action.SEND)
        self.guard.guard(document, Action.SEND, force=force)

        writes_status = can_transition(document.kind, document.status, DocumentStatus.SENT)

        client = self._client(document)
        business = self._business(document)
        if not skip_delivery:
            if reachable_email(client) is None:
                raise MissingContactInfo.email(client.name)
            if not business.email:
                raise MissingBusinessProfile.email()

        if skip_delivery:
            return self._commit_send(document, business, client, None, [], [], force, writes_status)

        if not self.storage.acquire_claim(document.id, Action.SEND.value, self.settings.send_claim_ttl_seconds):
            raise ActionInProgress.sending(document.kind.label)
        try:
            # A concurrent send may have finished between the first read and the claim.
            document = self._reload(document)
            if document.status is DocumentStatus.CANCELLED:
                raise self._reject_transition(document, Action.SEND)
            self.guard.guard(document, Action.SEND, force=force)
            writes_status = can_transition(document.kind, document.status, DocumentStatus.SENT)

            line_items = self.storage.get_line_items(document.id)
            allow_degraded = (
                self.settings.allow_without_attachment
                if allow_without_attachment is None else allow_without_attachment
            )
            warnings: list[UserMessage] = []

            artifact = None
            try:
                artifact = self.attachments.render(document, business, line_items, {"custom_message": custom_message})
            except DocumentPreparationError as exc:
                if not allow_degraded:
                    raise
                logger.warning("Sending %s without attachment: %s", document.display_name, exc)
                warnings.append(UserMessage(
                    title="Sent Without Attachment",
                    message=f"The {document.kind.value} PDF couldn't be created, so the email was sent without it.",
                    fix=preparation_error(exc.cause).fix,
                ))

            message = self.templates.render_document_email(
                document, client, business,
                custom_subject=custom_subject,
                custom_message=custom_message,
                has_attachment=artifact is not None,
            )
            if artifact is not None:
                message.attachments.append(artifact.as_attachment())

            result = self.delivery.deliver(message, business)
            if not result.success:
                self.side_effects.record_delivery_failure(
                    document, business, result.attempts, result.error.title,
                )
                raise DeliveryFailed(result.error, result.attempts)

            sent = self._commit_send(
                document, business, client, result.channel_used, result.attempts,
                line_items, force, writes_status,
            )
            sent.warnings[:0] = warnings
            return sent
        finally:
            self.storage.release_claim(document.id, Action.SEND.value)

    def _commit_send(
        self,
        document: Document,
        business: BusinessProfile,
        client: Client,
        channel: Optional[Channel],
        attempts: list[DeliveryAttempt],
        line_items: list,
        forced: bool,
        writes_status: bool,
    ) -> TransitionResult:
        warnings: list[UserMessage] = []
        changed = False
        if writes_status:
            changed = self.storage.transition_status(
                document.id, document.status, DocumentStatus.SENT, sent_at=self._clock(),
            )
            if not changed:
                logger.warning("%s changed status while it was being sent", document.display_name)
                warnings.append(UserMessage(
                    title="Status Changed",
                    message=f"The {document.kind.value} was delivered, but its status was updated elsewhere at the same time.",
                    fix="Refresh to see the latest status.",
                ))

        document = self._reload(document)
        if channel is None:
            logger.info("%s marked sent without delivery", document.display_name)
            message = f"{document.display_name} marked as sent"
        else:
            logger.info("%s sent to %s via %s", document.display_name, client.email, channel.value)
            message = f"{document.display_name} sent to {client.email}"

        outcomes = self.side_effects.after_send(
            document, business, client, channel, attempts,
            line_items or self.storage.get_line_items(document.id),
            forced=forced,
        )
        return TransitionResult(
            document=document,
            action=Action.SEND,
            message=message,
            channel_used=channel,
            attempts=attempts,
            warnings=warnings,
            side_effects=outcomes,
            status_changed=changed,
        )

    # ------------------------------------------------------------------
    # mark_paid
    # ------------------------------------------------------------------

    def mark_paid(
        self,
        document_id: str,
        amount: Decimal | None = None,
        payment_method: str | None = None,
        send_receipt: bool = True,
    ) -> TransitionResult:
        """Record payment, then try to email a receipt.

        The paid status is committed before the receipt is attempted, and a
        receipt failure only adds a warning.

        Raises:
            NotFound, AlreadyInTargetState, InvalidTransition,
            MissingBusinessProfile: Preconditions; nothing was written.
        """
        document = self._load(document_id, DocumentKind.INVOICE)
        self.guard.guard(document, Action.MARK_PAID)
        if not can_transition(document.kind, document.status, DocumentStatus.PAID):
            raise self._reject_transition(document, Action.MARK_PAID)
        business = self._business(document)

        paid_amount = amount if amount is not None else document.total
        written = self.storage.transition_status(
            document.id, document.status, DocumentStatus.PAID,
            paid_at=self._clock(),
            paid_amount=paid_amount,
            payment_method=payment_method,
        )
        if not written:
            current = self._reload(document)
            self.guard.guard(current, Action.MARK_PAID)
            raise self._reject_transition(current, Action.MARK_PAID)

        document = self._reload(document)
        logger.info("%s marked paid (%s)", document.display_name, paid_amount)

        client = self.storage.get_client(document.client_id)
        warnings: list[UserMessage] = []
        receipt_sent = False
        channel: Optional[Channel] = None
        attempts: list[DeliveryAttempt] = []

        if send_receipt:
            to = reachable_email(client)
            if to is None or not business.email:
                warnings.append(UserMessage(
                    title="Receipt Not Sent",
                    message="Payment recorded, but there was no email address to send a receipt to.",
                    fix="Add email addresses for the client and your business to send receipts.",
                ))
            else:
                try:
                    receipt = self.templates.render_receipt_email(document, client, business)
                    result = self.delivery.deliver(receipt, business)
                except Exception as exc:
                    logger.warning("Receipt for %s failed: %s", document.display_name, exc, exc_info=True)
                    result = None
                if result is not None and result.success:
                    receipt_sent = True
                    channel = result.channel_used
                    attempts = result.attempts
                else:
                    fix = result.error.fix if result is not None and result.error else "Try sending the receipt again later."
                    if result is not None:
                        attempts = result.attempts
                    warnings.append(UserMessage(
                        title="Receipt Not Sent",
                        message="Payment recorded. Receipt couldn't be sent.",
                        fix=fix,
                    ))

        outcomes = self.side_effects.after_payment(document, business, client, receipt_sent=receipt_sent)
        message = (
            f"Payment recorded and receipt sent to {client.email}"
            if receipt_sent else "Payment recorded"
        )
        return TransitionResult(
            document=document,
            action=Action.MARK_PAID,
            message=message,
            channel_used=channel,
            attempts=attempts,
            warnings=warnings,
            side_effects=outcomes,
        )

    # ------------------------------------------------------------------
    # accept / decline
    # ------------------------------------------------------------------

    def accept(self, document_id: str, signature: Signature) -> TransitionResult:
        """Record the client's signed acceptance of a sent quote."""
        document, business, client, ref = self._respond(document_id, signature, Action.ACCEPT)
        written = self.storage.transition_status(
            document.id, DocumentStatus.SENT, DocumentStatus.ACCEPTED,
            accepted_at=self._clock(),
            accepted_by=signature.signer_name.strip(),
            signature_ref=ref,
        )
        document = self._after_response_write(document, written, Action.ACCEPT, ref)
        outcomes = self.side_effects.after_acceptance(document, business, client)
        return TransitionResult(
            document=document,
            action=Action.ACCEPT,
            message=f"{document.display_name} accepted by {document.accepted_by}",
            side_effects=outcomes,
        )

    def decline(self, document_id: str, signature: Signature, reason: str | None = None) -> TransitionResult:
        """Record the client's signed decline of a sent quote."""
        document, business, client, ref = self._respond(document_id, signature, Action.DECLINE)
        written = self.storage.transition_status(
            document.id, DocumentStatus.SENT, DocumentStatus.DECLINED,
            declined_at=self._clock(),
            signature_ref=ref,
            decline_reason=(reason or "").strip() or None,
        )
        document = self._after_response_write(document, written, Action.DECLINE, ref)
        outcomes = self.side_effects.after_decline(document, business, client)
        return TransitionResult(
            document=document,
            action=Action.DECLINE,
            message=f"{document.display_name} declined",
            side_effects=outcomes,
        )

    def _respond(self, document_id: str, signature: Signature, action: Action):
        document = self._load(document_id, DocumentKind.QUOTE)
        self.guard.guard(document, action)

        target = DocumentStatus.ACCEPTED if action is Action.ACCEPT else DocumentStatus.DECLINED
        today = self._clock().date()
        if not can_transition(document.kind, document.status, target) or \
                effective_status(document, today) is DocumentStatus.EXPIRED:
            raise self._reject_transition(document, action)

        if signature is None or not (signature.signer_name or "").strip() or not (signature.signature_data or "").strip():
            raise InvalidSignature.missing()

        business = self._business(document)
        client = self.storage.get_client(document.client_id)

        if signature.signed_at is None:
            signature.signed_at = self._clock()
        ref = self.storage.save_signature(document.id, signature)
        return document, business, client, ref

    def _after_response_write(self, document: Document, written: bool, action: Action, signature_ref: str) -> Document:
        current = self._reload(document)
        if not written:
            # Another response won; its signature is the one on record.
            self.storage.delete_signature(signature_ref)
            self.guard.guard(current, action)
            raise self._reject_transition(current, action)
        logger.info("%s %s", current.display_name, current.status.value)
        return current

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    def cancel(self, document_id: str, reason: str = "") -> TransitionResult:
        """Cancel a draft or sent invoice.  Paid invoices can't be cancelled."""
        document = self._load(document_id, DocumentKind.INVOICE)
        self.guard.guard(document, Action.CANCEL)
        if not can_transition(document.kind, document.status, DocumentStatus.CANCELLED):
            raise self._reject_transition(document, Action.CANCEL)
        business = self._business(document)

        written = self.storage.transition_status(
            document.id, document.status, DocumentStatus.CANCELLED, cancelled_at=self._clock(),
        )
        current = self._reload(document)
        if not written:
            self.guard.guard(current, Action.CANCEL)
            raise self._reject_transition(current, Action.CANCEL)

        logger.info("%s cancelled", current.display_name)
        outcomes = self.side_effects.after_cancel(current, business, reason)
        return TransitionResult(
            document=current,
            action=Action.CANCEL,
            message=f"{current.display_name} cancelled",
            side_effects=outcomes,
        )
