"""Tests for tradedocs.idempotency -- duplicate action rejection.

Covers:
- Postcondition per action
- Rejection copy and prior timestamps
- force bypass
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradedocs.errors import AlreadyInTargetState
from tradedocs.idempotency import Action, IdempotencyGuard, is_satisfied
from tradedocs.models import Document, DocumentKind, DocumentStatus

WHEN = datetime(2026, 3, 5, 14, 30, tzinfo=timezone.utc)


def _doc(kind=DocumentKind.INVOICE, status=DocumentStatus.DRAFT, **fields):
    return Document(id="d-1", kind=kind, number="1001", client_id="c", business_id="b",
                    total=Decimal("100"), status=status, **fields)


class TestPostconditions:

    @pytest.mark.parametrize("status, action, expected", [
        (DocumentStatus.DRAFT, Action.SEND, False),
        (DocumentStatus.SENT, Action.SEND, True),
        (DocumentStatus.PAID, Action.SEND, True),
        (DocumentStatus.SENT, Action.MARK_PAID, False),
        (DocumentStatus.PAID, Action.MARK_PAID, True),
        (DocumentStatus.SENT, Action.ACCEPT, False),
        (DocumentStatus.ACCEPTED, Action.ACCEPT, True),
        (DocumentStatus.ACCEPTED, Action.DECLINE, False),
        (DocumentStatus.DECLINED, Action.DECLINE, True),
        (DocumentStatus.CANCELLED, Action.CANCEL, True),
    ])
    def test_is_satisfied(self, status, action, expected):
        assert is_satisfied(_doc(status=status), action) is expected


class TestGuard:

    def setup_method(self):
        self.guard = IdempotencyGuard()

    def test_passes_when_not_satisfied(self):
        self.guard.guard(_doc(), Action.SEND)

    def test_already_sent(self):
        with pytest.raises(AlreadyInTargetState) as exc_info:
            self.guard.guard(_doc(status=DocumentStatus.SENT, sent_at=WHEN), Action.SEND)

        err = exc_info.value
        assert err.prior_timestamp == WHEN
        assert err.to_dict() == {
            "title": "Invoice Already Sent",
            "message": "This invoice was already sent on 05 Mar 2026.",
            "fix": "If you want to send it again, use the 'Resend' option instead.",
        }

    def test_quote_wording(self):
        quote = _doc(kind=DocumentKind.QUOTE, status=DocumentStatus.SENT, sent_at=WHEN)
        with pytest.raises(AlreadyInTargetState) as exc_info:
            self.guard.guard(quote, Action.SEND)
        assert exc_info.value.title == "Quote Already Sent"

    def test_already_paid(self):
        with pytest.raises(AlreadyInTargetState) as exc_info:
            self.guard.guard(_doc(status=DocumentStatus.PAID, paid_at=WHEN), Action.MARK_PAID)
        assert exc_info.value.title == "Already Paid"
        assert "05 Mar 2026" in exc_info.value.detail.message

    def test_missing_timestamp(self):
        with pytest.raises(AlreadyInTargetState) as exc_info:
            self.guard.guard(_doc(status=DocumentStatus.SENT), Action.SEND)
        assert exc_info.value.prior_timestamp is None
        assert "an earlier date" in exc_info.value.detail.message

    def test_force_bypasses(self):
        self.guard.guard(_doc(status=DocumentStatus.SENT, sent_at=WHEN), Action.SEND, force=True)
