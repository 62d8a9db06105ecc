"""
tradedocs -- Template Engine

Renders the Jinja2 templates shipped in ``tradedocs/templates/``:

    document.html        printable quote / invoice (default renderer)
    document_email.html  covering email for a sent quote / invoice
    receipt_email.html   payment receipt
    reminder.html        wrapper for overdue reminder copy
    reminders.yaml       subject / email / SMS copy per tone x tier

Usage:
    engine = TemplateEngine()
    message = engine.render_document_email(document, client, business)
    content = engine.render_reminder(invoice, client, business, tier=7,
                                     tone=ReminderTone.FRIENDLY, days_past_due=7)
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .config import TradeDocsConfig, get_config
from .contacts import first_name
from .models import (
    BusinessProfile,
    Client,
    Document,
    LineItem,
    OutboundMessage,
    ReminderTone,
)

# Date format: "05 Mar 2026"
_DATE_FORMAT = "%d %b %Y"
_REMINDER_COPY_FILE = "reminders.yaml"


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | datetime | None) -> str:
    """Format a date as 'DD Mon YYYY'.  Returns empty string for None."""
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def format_currency(amount: Decimal | float | None) -> str:
    """Format an amount as '$1,510.00'.  Returns '$0.00' for None."""
    if amount is None:
        return "$0.00"
    return f"${Decimal(str(amount)):,.2f}"


def html_to_plaintext(html_content: str) -> str:
    """Convert a rendered HTML email body to a plain-text alternative part.

    Strips tags, keeps paragraph and line breaks, expands links to
    ``text (url)`` and decodes entities.
    """
    text = html_content

    text = re.sub(r"<(style|head)[^>]*>.*?</\1>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(div|tr|h[1-6])>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</td>", "  ", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)
    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Reminder content
# ---------------------------------------------------------------------------

@dataclass
class ReminderContent:
    subject: str
    html: str
    text: str
    sms: str
    tone: ReminderTone
    copy_tier: int


# ===========================================================================
# Main Template Engine Class
# ===========================================================================

class TemplateEngine:
    """Jinja2 renderer for document emails, receipts and reminders.

    Attributes:
        env: The Jinja2 Environment bound to the template directory.
        template_dir: Directory holding the HTML templates and reminders.yaml.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        config: TradeDocsConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        if template_dir is None:
            self.template_dir = self.config.template_paths.resolved_dir
        else:
            self.template_dir = Path(template_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            # Subjects and SMS bodies are rendered from strings and must stay unescaped.
            autoescape=select_autoescape(["html"], default_for_string=False),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["format_currency"] = format_currency

        self._reminder_copy: Optional[dict] = None

    # -------------------------------------------------------------------
    # Printable document
    # -------------------------------------------------------------------

    def render_document_html(
        self,
        document: Document,
        business: BusinessProfile,
        line_items: list[LineItem],
        extras: dict[str, Any] | None = None,
    ) -> str:
        """Render the printable quote / invoice page."""
        return self._render_template("document.html", {
            "document": document,
            "business": business,
            "line_items": line_items,
            "extras": extras or {},
            "kind_label": document.kind.label.upper(),
        })

    # -------------------------------------------------------------------
    # Emails
    # -------------------------------------------------------------------

    def render_document_email(
        self,
        document: Document,
        client: Client,
        business: BusinessProfile,
        custom_subject: str | None = None,
        custom_message: str | None = None,
        has_attachment: bool = True,
    ) -> OutboundMessage:
        """Build the covering email for a quote or invoice being sent.

        Args:
            document: The quote or invoice.
            client: Recipient.  Its email must already be validated.
            business: Sender branding and reply-to.
            custom_subject: Replaces the default subject line when given.
            custom_message: Replaces the default opening paragraph when given.
            has_attachment: Controls the "attached" wording.

        Returns:
            OutboundMessage without attachments; the caller adds them.
        """
        subject = custom_subject or f"{document.kind.label} {document.number} from {business.name}"
        html_body = self._render_template("document_email.html", {
            "document": document,
            "business": business,
            "client_first_name": first_name(client.name),
            "custom_message": _paragraphs(custom_message) if custom_message else [],
            "has_attachment": has_attachment,
            "kind_lower": document.kind.value,
        })
        return self._message(client, business, subject, html_body)

    def render_receipt_email(
        self,
        document: Document,
        client: Client,
        business: BusinessProfile,
    ) -> OutboundMessage:
        subject = f"Payment received - Invoice {document.number}"
        html_body = self._render_template("receipt_email.html", {
            "document": document,
            "business": business,
            "client_first_name": first_name(client.name),
            "amount": document.paid_amount if document.paid_amount is not None else document.total,
        })
        return self._message(client, business, subject, html_body)

    def render_reminder(
        self,
        document: Document,
        client: Client,
        business: BusinessProfile,
        tier: int,
        tone: ReminderTone,
        days_past_due: int,
    ) -> ReminderContent:
        """Render the tone-specific reminder for one escalation tier.

        Tiers without their own copy borrow the nearest lower tier's copy
        (a 60-day tier reads like the 30-day one).
        """
        copy_tier, copy = self._reminder_copy_for(tone, tier)
        ctx = {
            "client_name": first_name(client.name),
            "invoice_number": document.number,
            "amount": format_currency(document.total),
            "business_name": business.name or self.config.reminders.fallback_business_name,
            "days_past_due": days_past_due,
            "due_date": format_date(document.due_date),
        }

        subject = self.env.from_string(copy["subject"]).render(**ctx).strip()
        body = self.env.from_string(copy["body"]).render(**ctx).strip()
        sms = self.env.from_string(copy["sms"]).render(**ctx).strip()

        html_body = self._render_template("reminder.html", {
            "paragraphs": _paragraphs(body),
            "business": business,
            "document": document,
            "tier": tier,
        })

        return ReminderContent(
            subject=subject,
            html=html_body,
            text=body,
            sms=sms,
            tone=tone,
            copy_tier=copy_tier,
        )

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _render_template(self, template_file: str, context: dict) -> str:
        template = self.env.get_template(template_file)
        return template.render(**context)

    def _message(self, client: Client, business: BusinessProfile, subject: str, html_body: str) -> OutboundMessage:
        return OutboundMessage(
            to=(client.email or "").strip(),
            subject=subject,
            html=html_body,
            text=html_to_plaintext(html_body),
            from_name=business.name,
            reply_to=business.email or "",
        )

    def _load_reminder_copy(self) -> dict:
        if self._reminder_copy is None:
            path = self.template_dir / _REMINDER_COPY_FILE
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            self._reminder_copy = {
                tone: {int(tier): copy for tier, copy in tiers.items()}
                for tone, tiers in raw.items()
            }
        return self._reminder_copy

    def _reminder_copy_for(self, tone: ReminderTone, tier: int) -> tuple[int, dict]:
        copy = self._load_reminder_copy()
        by_tier = copy.get(tone.value) or copy[ReminderTone.FRIENDLY.value]
        defined = sorted(by_tier)
        lower = [t for t in defined if t <= tier]
        chosen = lower[-1] if lower else defined[0]
        return chosen, by_tier[chosen]


def _paragraphs(text: str) -> list[list[str]]:
    """Split copy into paragraphs of lines for the HTML wrappers."""
    return [
        [line for line in block.split("\n")]
        for block in re.split(r"\n\s*\n", text.strip())
        if block.strip()
    ]
