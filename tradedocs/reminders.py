"""
tradedocs -- Reminder Escalation Engine

Sends tiered overdue-invoice reminders by email and SMS.

For each business with reminders enabled, every sent invoice whose due date
has passed is checked against the business's tier thresholds (days overdue,
default 7 / 14 / 30).  A tier fires only on the day its threshold is
crossed, and at most once per invoice: the (invoice, tier) row in the
reminder log is written after the attempt whatever the outcome, so a
partial send (email ok, SMS failed) is never retried.

Usage:
    engine = ReminderEscalationEngine(storage, delivery, templates, side_effects, config)
    result = engine.run(date.today())
    print(result.summary())
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .attachments import AttachmentPipeline
from .channels import SmsChannel
from .config import TradeDocsConfig, get_config
from .contacts import reachable_email, to_e164
from .delivery import DeliveryOrchestrator
from .errors import DocumentPreparationError, InvalidTransition, MissingBusinessProfile, NotFound
from .interfaces import Storage
from .models import (
    BusinessProfile,
    Channel,
    Client,
    Document,
    DocumentKind,
    DocumentStatus,
    OutboundMessage,
    ReminderLog,
    ReminderSettings,
    ReminderTone,
)
from .side_effects import SideEffectCoordinator
from .templates import ReminderContent, TemplateEngine

logger = logging.getLogger(__name__)

# Copy used by manual reminders, highest threshold first.
MANUAL_COPY_TIERS = (30, 14, 7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tier arithmetic
# ---------------------------------------------------------------------------

def days_past_due(document: Document, today: date) -> int:
    """Whole days between the due date and ``today`` (0 when not yet due)."""
    if document.due_date is None:
        return 0
    return max((today - document.due_date).days, 0)


def due_tier(days: int, tiers: list[int]) -> Optional[int]:
    """The tier whose threshold is crossed on exactly this day, or None.

    Examples:
        >>> due_tier(7, [7, 14, 30])
        7
        >>> due_tier(8, [7, 14, 30]) is None
        True
    """
    for tier in sorted(tiers):
        if tier <= days < tier + 1:
            return tier
    return None


def manual_copy_tier(days: int) -> int:
    for tier in MANUAL_COPY_TIERS:
        if days >= tier:
            return tier
    return MANUAL_COPY_TIERS[-1]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ReminderOutcome:
    """What happened to one invoice during a reminder run."""

    document_id: str
    number: str
    business_id: str
    status: str                 # "sent" | "partial" | "failed" | "skipped" | "error"
    days_past_due: int = 0
    tier: Optional[int] = None
    channels_used: list[Channel] = field(default_factory=list)
    channels_failed: list[Channel] = field(default_factory=list)
    detail: str = ""

    @property
    def success(self) -> bool:
        return bool(self.channels_used)

    @property
    def email_sent(self) -> bool:
        return any(c is not Channel.SMS for c in self.channels_used)

    @property
    def sms_sent(self) -> bool:
        return Channel.SMS in self.channels_used

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "number": self.number,
            "business_id": self.business_id,
            "status": self.status,
            "days_past_due": self.days_past_due,
            "tier": self.tier,
            "channels_used": [c.value for c in self.channels_used],
            "channels_failed": [c.value for c in self.channels_failed],
            "detail": self.detail,
        }


@dataclass
class ReminderRunResult:
    """Container for one escalation run."""

    run_date: date
    businesses_checked: int = 0
    businesses_skipped: int = 0
    invoices_checked: int = 0
    outcomes: list[ReminderOutcome] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def reminders_sent(self) -> int:
        return sum(1 for o in self.outcomes if o.status in ("sent", "partial"))

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def summary(self) -> str:
        lines = [
            f"Reminder run for {self.run_date.isoformat()}",
            f"  Businesses checked : {self.businesses_checked} ({self.businesses_skipped} disabled)",
            f"  Invoices overdue   : {self.invoices_checked}",
            f"  Reminders sent     : {self.reminders_sent}",
            f"    partial          : {self.count('partial')}",
            f"  Failed             : {self.count('failed')}",
            f"  Errors             : {self.count('error')}",
        ]
        for outcome in self.outcomes:
            if outcome.status in ("failed", "error"):
                lines.append(f"  ! Invoice #{outcome.number}: {outcome.detail}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date.isoformat(),
            "businesses_checked": self.businesses_checked,
            "businesses_skipped": self.businesses_skipped,
            "invoices_checked": self.invoices_checked,
            "reminders_sent": self.reminders_sent,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "outcomes": [o.to_dict() for o in self.outcomes if o.status != "skipped"],
        }

    def export_json(self, path: str | Path) -> Path:
        """Write the run as JSON and return the path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("Exported reminder run to %s", path)
        return path


# ===========================================================================
# Engine
# ===========================================================================

class ReminderEscalationEngine:
    """Runs the overdue-invoice escalation for every business.

    Args:
        storage: Documents, clients, businesses and the reminder log.
        delivery: Email channel fallback shared with ``send``.
        templates: Renders the tone x tier reminder copy.
        side_effects: Activity log and overdue push per reminder.
        config: Defaults for businesses without reminder settings.
        sms: Optional SMS channel.  Without one, reminders are email-only.
        attachments: Optional pipeline for attaching the invoice.
        clock: Timestamp source for the reminder log.
    """

    def __init__(
        self,
        storage: Storage,
        delivery: DeliveryOrchestrator,
        templates: TemplateEngine,
        side_effects: SideEffectCoordinator,
        config: TradeDocsConfig | None = None,
        sms: SmsChannel | None = None,
        attachments: AttachmentPipeline | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.delivery = delivery
        self.templates = templates
        self.side_effects = side_effects
        self.config = config or get_config()
        self.sms = sms
        self.attachments = attachments
        self._clock = clock

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def settings_for(self, business: BusinessProfile) -> ReminderSettings:
        if business.reminder_settings is not None:
            return business.reminder_settings
        defaults = self.config.reminders
        return ReminderSettings(
            enabled=defaults.enabled,
            tiers=list(defaults.tiers),
            tone=ReminderTone(defaults.tone),
            sms_enabled=defaults.sms_enabled,
        )

    # ------------------------------------------------------------------
    # Scheduled run
    # ------------------------------------------------------------------

    def run(self, today: date | None = None) -> ReminderRunResult:
        """Process every business once, sequentially."""
        today = today or self._clock().date()
        result = ReminderRunResult(run_date=today, started_at=self._clock())
        logger.info("Reminder run for %s starting", today.isoformat())

        for business in self.storage.list_businesses():
            try:
                settings = self.settings_for(business)
            except ValueError as exc:
                logger.error("Invalid reminder settings for business %s: %s", business.id, exc)
                result.businesses_skipped += 1
                continue
            if not settings.enabled:
                logger.debug("Reminders disabled for business %s", business.id)
                result.businesses_skipped += 1
                continue
            result.businesses_checked += 1
            self.process_business(business, settings, today, result)

        result.completed_at = self._clock()
        logger.info(
            "Reminder run complete: %d sent, %d failed, %d errors",
            result.reminders_sent, result.count("failed"), result.count("error"),
        )
        return result

    def process_business(
        self,
        business: BusinessProfile,
        settings: ReminderSettings,
        today: date,
        result: ReminderRunResult,
    ) -> None:
        invoices = self.storage.list_overdue_invoices(business.id, today)
        result.invoices_checked += len(invoices)

        for invoice in invoices:
            try:
                outcome = self.process_invoice(invoice, business, settings, today)
            except Exception as exc:
                logger.exception("Reminder for %s failed unexpectedly", invoice.display_name)
                outcome = ReminderOutcome(
                    document_id=invoice.id,
                    number=invoice.number,
                    business_id=business.id,
                    status="error",
                    days_past_due=days_past_due(invoice, today),
                    detail=str(exc),
                )
            result.outcomes.append(outcome)

    def process_invoice(
        self,
        invoice: Document,
        business: BusinessProfile,
        settings: ReminderSettings,
        today: date,
    ) -> ReminderOutcome:
        """Send the reminder for today's tier, if there is one and it hasn't gone out."""
        days = days_past_due(invoice, today)
        outcome = ReminderOutcome(
            document_id=invoice.id,
            number=invoice.number,
            business_id=business.id,
            status="skipped",
            days_past_due=days,
        )

        tier = due_tier(days, settings.tiers)
        if tier is None:
            logger.debug("%s is %d days overdue: no tier today", invoice.display_name, days)
            outcome.detail = "no tier today"
            return outcome
        outcome.tier = tier

        if self.storage.has_reminder(invoice.id, tier):
            logger.debug("%s already reminded at %d days", invoice.display_name, tier)
            outcome.detail = "already sent"
            return outcome

        client = self.storage.get_client(invoice.client_id)
        if client is None:
            logger.warning("%s has no client; reminder skipped", invoice.display_name)
            outcome.detail = "client not found"
            return outcome

        content = self.templates.render_reminder(invoice, client, business, tier, settings.tone, days)
        self._deliver(invoice, client, business, content, outcome, sms_enabled=settings.sms_enabled)

        recorded = self.storage.record_reminder(ReminderLog(
            document_id=invoice.id,
            tier=tier,
            sent_at=self._clock(),
            channels_used=list(outcome.channels_used),
        ))
        if not recorded:
            logger.info("%s tier %d was recorded by another run", invoice.display_name, tier)
            outcome.status = "skipped"
            outcome.detail = "recorded by another run"
            return outcome

        self.side_effects.after_reminder(invoice, business, tier, days, outcome.channels_used)
        logger.info(
            "%s: %d-day reminder %s via %s",
            invoice.display_name, tier, outcome.status,
            ", ".join(c.value for c in outcome.channels_used) or "no channel",
        )
        return outcome

    # ------------------------------------------------------------------
    # Manual reminder
    # ------------------------------------------------------------------

    def send_manual_reminder(
        self,
        document_id: str,
        tone: ReminderTone | None = None,
        today: date | None = None,
    ) -> ReminderOutcome:
        """Send a reminder now, outside the tier schedule.

        The copy follows how far overdue the invoice is (30-, 14- or 7-day).
        The send is recorded in the activity log only, so it never blocks a
        scheduled tier.

        Raises:
            NotFound: No such invoice, or its client is gone.
            InvalidTransition: The invoice isn't awaiting payment.
            MissingBusinessProfile: The business profile is missing.
        """
        today = today or self._clock().date()
        invoice = self.storage.get_document(document_id)
        if invoice is None or invoice.kind is not DocumentKind.INVOICE:
            raise NotFound.document(DocumentKind.INVOICE.label)
        if invoice.status is not DocumentStatus.SENT:
            raise InvalidTransition.between(invoice.kind.label, invoice.status.value, "remind")
        business = self.storage.get_business(invoice.business_id)
        if business is None:
            raise MissingBusinessProfile.profile()
        client = self.storage.get_client(invoice.client_id)
        if client is None:
            raise NotFound.client(invoice.kind.label)

        settings = self.settings_for(business)
        days = days_past_due(invoice, today)
        copy_tier = manual_copy_tier(days)
        content = self.templates.render_reminder(
            invoice, client, business, copy_tier, tone or settings.tone, days,
        )

        outcome = ReminderOutcome(
            document_id=invoice.id,
            number=invoice.number,
            business_id=business.id,
            status="skipped",
            days_past_due=days,
            tier=copy_tier,
        )
        self._deliver(invoice, client, business, content, outcome, sms_enabled=True)
        self.side_effects.after_reminder(invoice, business, None, days, outcome.channels_used, manual=True)
        logger.info("%s: manual reminder %s", invoice.display_name, outcome.status)
        return outcome

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _deliver(
        self,
        invoice: Document,
        client: Client,
        business: BusinessProfile,
        content: ReminderContent,
        outcome: ReminderOutcome,
        sms_enabled: bool,
    ) -> None:
        """Attempt email and SMS, filling in the outcome's channel lists and status."""
        attempted = 0
        errors: list[str] = []

        to = reachable_email(client)
        if to:
            attempted += 1
            message = OutboundMessage(
                to=to,
                subject=content.subject,
                html=content.html,
                text=content.text,
                from_name=business.name or self.config.reminders.fallback_business_name,
                reply_to=business.email or "",
            )
            self._attach_invoice(invoice, business, message)
            result = self.delivery.deliver(message, business)
            if result.success:
                outcome.channels_used.append(result.channel_used)
            else:
                outcome.channels_failed.extend(a.channel for a in result.attempts)
                errors.append(result.error.title)

        if sms_enabled and self.sms is not None:
            e164 = to_e164(client.phone, self.config.contacts)
            if e164 is None:
                logger.debug("%s: no valid mobile for SMS", invoice.display_name)
            else:
                attempted += 1
                try:
                    sms_result = self.sms.send(e164, content.sms)
                except Exception as exc:
                    logger.warning("SMS reminder for %s failed: %s", invoice.display_name, exc)
                    sms_ok, reason = False, str(exc)
                else:
                    sms_ok = sms_result.success
                    reason = str(sms_result.provider_error or "")
                if sms_ok:
                    outcome.channels_used.append(Channel.SMS)
                else:
                    outcome.channels_failed.append(Channel.SMS)
                    errors.append(f"SMS: {reason}" if reason else "SMS failed")

        succeeded = len(outcome.channels_used)
        if attempted == 0:
            outcome.status = "failed"
            outcome.detail = "client has no email or mobile number"
        elif succeeded == 0:
            outcome.status = "failed"
            outcome.detail = "; ".join(errors)
        elif succeeded < attempted:
            outcome.status = "partial"
            outcome.detail = "; ".join(errors)
        else:
            outcome.status = "sent"

    def _attach_invoice(self, invoice: Document, business: BusinessProfile, message: OutboundMessage) -> None:
        if self.attachments is None or not self.config.reminders.attach_invoice:
            return
        try:
            artifact = self.attachments.render(
                invoice, business, self.storage.get_line_items(invoice.id), {},
            )
        except DocumentPreparationError as exc:
            logger.warning("Reminder for %s sent without attachment: %s", invoice.display_name, exc)
            return
        message.attachments.append(artifact.as_attachment())
