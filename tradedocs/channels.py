"""
tradedocs -- Channel Senders

Interchangeable senders used by the DeliveryOrchestrator:

    SmtpChannel            the business's own mailbox (smtplib + STARTTLS)
    DraftProviderChannel   creates a draft for a human to review and send
    DirectProviderChannel  sends immediately through a provider
    SmsChannel             text messages to E.164 numbers (reminders only)

Each email sender returns a ChannelResult; exceptions propagate to the
orchestrator, which classifies them and moves on to the next channel.

EmlDraftClient is the local draft provider: it writes a reviewable .eml file
that opens in any mail client.

Usage:
    smtp = SmtpChannel(cfg.smtp, timeout=cfg.delivery.channel_timeout_seconds)
    drafts = DraftProviderChannel(EmlDraftClient("output/drafts"))
    result = smtp.send(message, business)
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
import uuid
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from pathlib import Path
from typing import Callable

from .config import SMTPSettings
from .interfaces import ChannelResult, DirectSendClient, DraftClient, SmsClient
from .models import BusinessProfile, Channel, OutboundMessage
from .templates import html_to_plaintext

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# MIME construction
# ---------------------------------------------------------------------------

def build_mime_message(message: OutboundMessage, from_address: str) -> MIMEMultipart:
    """Build a multipart/mixed message with a text+HTML body and attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = message.subject
    msg["From"] = formataddr((message.from_name, from_address)) if message.from_name else from_address
    msg["To"] = message.to
    if message.reply_to:
        msg["Reply-To"] = message.reply_to
    msg["Date"] = formatdate(localtime=True)

    body_part = MIMEMultipart("alternative")
    text_body = message.text or html_to_plaintext(message.html)
    body_part.attach(MIMEText(text_body, "plain", "utf-8"))
    body_part.attach(MIMEText(message.html, "html", "utf-8"))
    msg.attach(body_part)

    for att in message.attachments:
        maintype, _, subtype = att.content_type.partition("/")
        if not maintype or not subtype:
            maintype, subtype = "application", "octet-stream"
        part = MIMEBase(maintype, subtype, name=att.filename)
        part.set_payload(att.content)
        encoders.encode_base64(part)
        part["Content-Disposition"] = f'attachment; filename="{att.filename}"'
        msg.attach(part)

    return msg


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class ChannelSender:
    """One email delivery mechanism."""

    channel: Channel

    def is_available(self, business: BusinessProfile) -> bool:
        return True

    def send(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SmtpChannel(ChannelSender):
    """Deliver through the business's own mail account.

    Blank connection fields fall back to ``SMTPSettings``.  The socket
    timeout is the caller-level cancellation surface: a timeout raises,
    and the orchestrator treats it as a channel failure.
    """

    channel = Channel.SMTP

    def __init__(
        self,
        settings: SMTPSettings | None = None,
        timeout: float = 30.0,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        self.settings = settings or SMTPSettings()
        self.timeout = timeout
        self._smtp_factory = smtp_factory

    def is_available(self, business: BusinessProfile) -> bool:
        return business.has_smtp

    def send(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult:
        conn = business.email_connection
        if conn is None or not conn.is_configured:
            return ChannelResult.failed("SMTP sender not configured", provider="smtp")

        host = conn.host or self.settings.host
        port = conn.port or self.settings.port
        username = conn.username or self.settings.username
        password = conn.password or self.settings.password
        from_address = conn.from_address or business.email or username

        mime = build_mime_message(message, from_address)

        with self._smtp_factory(host, port, timeout=self.timeout) as server:
            if conn.use_tls:
                server.starttls(context=ssl.create_default_context())
            server.login(username, password)
            server.send_message(mime)

        logger.info("SMTP delivery to %s via %s:%s", message.to, host, port)
        return ChannelResult.ok()


# ---------------------------------------------------------------------------
# Provider-backed channels
# ---------------------------------------------------------------------------

class DraftProviderChannel(ChannelSender):
    channel = Channel.DRAFT

    def __init__(self, client: DraftClient):
        self.client = client

    def send(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult:
        return self.client.create_draft(message, business)


class DirectProviderChannel(ChannelSender):
    channel = Channel.DIRECT

    def __init__(self, client: DirectSendClient):
        self.client = client

    def send(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult:
        return self.client.send(message, business)


class SmsChannel:
    """Text-message channel.  Callers validate and format the number first."""

    channel = Channel.SMS

    def __init__(self, client: SmsClient):
        self.client = client

    def send(self, e164_number: str, text: str) -> ChannelResult:
        return self.client.send(e164_number, text)


# ---------------------------------------------------------------------------
# Local .eml draft provider
# ---------------------------------------------------------------------------

class EmlDraftClient:
    """Write each draft to ``drafts_dir`` as an .eml file for manual review."""

    def __init__(self, drafts_dir: str | Path):
        self.drafts_dir = Path(drafts_dir)

    def create_draft(self, message: OutboundMessage, business: BusinessProfile) -> ChannelResult:
        self.drafts_dir.mkdir(parents=True, exist_ok=True)
        mime = build_mime_message(message, business.email or "")

        subject = re.sub(r"[^A-Za-z0-9]+", "_", message.subject).strip("_")[:60] or "draft"
        eml_path = self.drafts_dir / f"{subject}_{uuid.uuid4().hex[:8]}.eml"
        eml_path.write_text(mime.as_string(), encoding="utf-8")

        logger.info("Draft written for review: %s", eml_path)
        return ChannelResult.ok(reference=str(eml_path))
