"""Shared fakes and fixtures for the tradedocs test suite.

Every test gets its own SQLite file under tmp_path and a fixed clock
(14 Mar 2026, 09:00 UTC).  Channels, renderer, artifact store, push and
accounting collaborators are in-memory fakes that record what they were
asked to do.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradedocs.attachments import AttachmentPipeline
from tradedocs.channels import ChannelSender, SmsChannel
from tradedocs.config import TradeDocsConfig
from tradedocs.delivery import DeliveryOrchestrator
from tradedocs.interfaces import AccountingResult, ChannelResult
from tradedocs.models import (
    BusinessProfile,
    Channel,
    Client,
    DeliveryMode,
    Document,
    DocumentKind,
    DocumentStatus,
    EmailConnection,
    LineItem,
)
from tradedocs.reminders import ReminderEscalationEngine
from tradedocs.side_effects import SideEffectCoordinator
from tradedocs.state_machine import DocumentStateMachine
from tradedocs.storage import SQLiteStorage
from tradedocs.templates import TemplateEngine


NOW = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


# ============================================================================
# Fakes
# ============================================================================

class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChannel(ChannelSender):
    """Email channel that replays scripted outcomes.

    Each outcome is a ChannelResult to return or an exception to raise.
    Once the script runs out the last outcome repeats.
    """

    def __init__(self, channel: Channel, *outcomes, available: bool = True):
        self.channel = channel
        self.outcomes = list(outcomes) or [ChannelResult.ok()]
        self.available = available
        self.sent = []

    def is_available(self, business) -> bool:
        return self.available

    def send(self, message, business) -> ChannelResult:
        self.sent.append(message)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeRenderer:
    content_type = "application/pdf"
    extension = "pdf"

    def __init__(self, fail: Exception | None = None, output: bytes = b"%PDF-1.7 fake"):
        self.fail = fail
        self.output = output
        self.calls = 0

    def render(self, document, business, line_items, extras) -> bytes:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        return self.output


class MemoryArtifactStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    def put(self, key, data, content_type) -> str:
        self.objects[key] = data
        return f"mem://{key}"

    def get(self, path_ref) -> bytes:
        return self.objects[path_ref.removeprefix("mem://")]


class RecordingNotifier:
    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.sent = []

    def notify(self, user_id, category, title, body, data) -> None:
        if self.fail is not None:
            raise self.fail
        self.sent.append({"user_id": user_id, "category": category, "title": title, "body": body, "data": data})


class FakeAccounting:
    def __init__(self, invoice_result: AccountingResult | None = None, payment_result: AccountingResult | None = None):
        self.invoice_result = invoice_result or AccountingResult(success=True, remote_id="XERO-1")
        self.payment_result = payment_result or AccountingResult(success=True, remote_id="PAY-1")
        self.invoices = []
        self.payments = []

    def create_remote_invoice(self, document, line_items) -> AccountingResult:
        self.invoices.append((document.id, len(line_items)))
        return self.invoice_result

    def create_remote_payment(self, remote_id, amount) -> AccountingResult:
        self.payments.append((remote_id, amount))
        return self.payment_result


class FakeSmsClient:
    def __init__(self, result: ChannelResult | None = None):
        self.result = result or ChannelResult.ok()
        self.sent = []

    def send(self, e164_number, text) -> ChannelResult:
        self.sent.append((e164_number, text))
        return self.result


# ============================================================================
# Core fixtures
# ============================================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config() -> TradeDocsConfig:
    return TradeDocsConfig()


@pytest.fixture
def storage(tmp_path, clock) -> SQLiteStorage:
    return SQLiteStorage(tmp_path / "test.db", clock=clock)


@pytest.fixture
def templates(config) -> TemplateEngine:
    return TemplateEngine(config=config)


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def artifacts() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def accounting() -> FakeAccounting:
    return FakeAccounting()


@pytest.fixture
def draft_channel() -> FakeChannel:
    return FakeChannel(Channel.DRAFT)


@pytest.fixture
def direct_channel() -> FakeChannel:
    return FakeChannel(Channel.DIRECT)


@pytest.fixture
def smtp_channel() -> FakeChannel:
    return FakeChannel(Channel.SMTP, available=False)


# ============================================================================
# Records
# ============================================================================

@pytest.fixture
def business(storage) -> BusinessProfile:
    profile = BusinessProfile(
        id="biz-1",
        name="Sparky Electrical",
        owner_id="user-1",
        email="office@sparky.example",
        phone="02 9000 0000",
        preferred_delivery_mode=DeliveryMode.MANUAL_REVIEW,
    )
    storage.save_business(profile)
    return profile


@pytest.fixture
def client(storage) -> Client:
    c = Client(id="cli-1", name="Jane Citizen", email="jane@example.com", phone="0412 345 678")
    storage.save_client(c)
    return c


@pytest.fixture
def make_document(storage, business, client):
    """Factory: save a document (with two line items) and return it."""

    def _make(
        doc_id: str = "inv-1",
        kind: DocumentKind = DocumentKind.INVOICE,
        status: DocumentStatus = DocumentStatus.DRAFT,
        number: str = "1001",
        total: str = "1510.00",
        **fields,
    ) -> Document:
        document = Document(
            id=doc_id,
            kind=kind,
            number=number,
            client_id=fields.pop("client_id", client.id),
            business_id=fields.pop("business_id", business.id),
            total=Decimal(total),
            status=status,
            **fields,
        )
        storage.save_document(document, [
            LineItem("Switchboard upgrade", Decimal("1"), Decimal("1200.00")),
            LineItem("Labour (hours)", Decimal("2"), Decimal("155.00")),
        ])
        return document

    return _make


@pytest.fixture
def overdue_invoice(make_document):
    """A sent invoice due exactly seven days before TODAY."""
    return make_document(
        status=DocumentStatus.SENT,
        due_date=TODAY - timedelta(days=7),
        sent_at=NOW - timedelta(days=21),
    )


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def delivery(smtp_channel, draft_channel, direct_channel, clock) -> DeliveryOrchestrator:
    return DeliveryOrchestrator([smtp_channel, draft_channel, direct_channel], clock=clock)


@pytest.fixture
def pipeline(renderer, artifacts, clock) -> AttachmentPipeline:
    return AttachmentPipeline(renderer, artifacts, clock=clock)


@pytest.fixture
def side_effects(storage, notifier, accounting, clock) -> SideEffectCoordinator:
    return SideEffectCoordinator(storage, notifications=notifier, accounting=accounting, clock=clock)


@pytest.fixture
def machine(storage, templates, pipeline, delivery, side_effects, config, clock) -> DocumentStateMachine:
    return DocumentStateMachine(
        storage, templates, pipeline, delivery, side_effects,
        settings=config.delivery, clock=clock,
    )


@pytest.fixture
def sms_client() -> FakeSmsClient:
    return FakeSmsClient()


@pytest.fixture
def engine(storage, delivery, templates, side_effects, config, sms_client, pipeline, clock) -> ReminderEscalationEngine:
    return ReminderEscalationEngine(
        storage, delivery, templates, side_effects, config,
        sms=SmsChannel(sms_client), attachments=pipeline, clock=clock,
    )


@pytest.fixture
def smtp_business(storage, business) -> BusinessProfile:
    """The default business with its own mailbox connected."""
    business.email_connection = EmailConnection(
        host="smtp.sparky.example", port=587, username="office@sparky.example", password="secret",
    )
    storage.save_business(business)
    return business


@pytest.fixture
def today() -> date:
    return TODAY
