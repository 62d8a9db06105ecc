"""Tests for tradedocs.delivery -- channel ordering and fall-through.

Covers:
- Channel ordering per delivery mode, with SMTP first when connected
- Unregistered / unavailable channels left out
- Fall-through on returned failures and raised exceptions
- Exhaustion keeps the last classified error
- SMS senders rejected
"""

import smtplib

import pytest

from tradedocs.channels import SmsChannel
from tradedocs.delivery import DeliveryOrchestrator
from tradedocs.error_classifier import ErrorCategory, classify
from tradedocs.interfaces import ChannelResult
from tradedocs.models import BusinessProfile, Channel, DeliveryMode, OutboundMessage


def _message():
    return OutboundMessage(to="jane@example.com", subject="Invoice 1001 from Sparky Electrical", html="<p>Hi</p>")


def _business(mode=DeliveryMode.MANUAL_REVIEW):
    return BusinessProfile(id="biz-1", name="Sparky Electrical", email="office@sparky.example",
                           preferred_delivery_mode=mode)


# ============================================================================
# Ordering
# ============================================================================

class TestChannelOrder:

    @pytest.mark.parametrize("mode, smtp_available, expected", [
        (DeliveryMode.MANUAL_REVIEW, False, [Channel.DRAFT, Channel.DIRECT]),
        (DeliveryMode.MANUAL_REVIEW, True, [Channel.SMTP, Channel.DRAFT, Channel.DIRECT]),
        (DeliveryMode.AUTOMATIC_SEND, False, [Channel.DIRECT]),
        (DeliveryMode.AUTOMATIC_SEND, True, [Channel.SMTP, Channel.DIRECT]),
    ])
    def test_order(self, delivery, smtp_channel, mode, smtp_available, expected):
        smtp_channel.available = smtp_available
        assert delivery.channel_order(_business(mode)) == expected

    def test_unregistered_channels_left_out(self, draft_channel):
        orchestrator = DeliveryOrchestrator([draft_channel])
        assert orchestrator.channel_order(_business(DeliveryMode.AUTOMATIC_SEND)) == []
        assert orchestrator.channel_order(_business()) == [Channel.DRAFT]

    def test_unavailable_channel_left_out(self, delivery, draft_channel):
        draft_channel.available = False
        assert delivery.channel_order(_business()) == [Channel.DIRECT]

    def test_sms_rejected(self, sms_client):
        with pytest.raises(ValueError):
            DeliveryOrchestrator([SmsChannel(sms_client)])


# ============================================================================
# Delivery
# ============================================================================

class TestDeliver:

    def test_first_channel_succeeds(self, delivery, draft_channel, direct_channel, clock):
        draft_channel.outcomes = [ChannelResult.ok(reference="draft-42")]

        result = delivery.deliver(_message(), _business())

        assert result.success
        assert result.channel_used is Channel.DRAFT
        assert result.reference == "draft-42"
        assert [(a.channel, a.success) for a in result.attempts] == [(Channel.DRAFT, True)]
        assert result.attempts[0].timestamp == clock.now
        assert direct_channel.sent == []

    def test_falls_through_on_returned_failure(self, delivery, draft_channel, direct_channel):
        draft_channel.outcomes = [ChannelResult.failed("Request had insufficient permission scopes", code="403")]

        result = delivery.deliver(_message(), _business())

        assert result.success
        assert result.channel_used is Channel.DIRECT
        assert [(a.channel, a.success) for a in result.attempts] == [
            (Channel.DRAFT, False),
            (Channel.DIRECT, True),
        ]
        assert result.attempts[0].classified_error.category is ErrorCategory.SENDER_NOT_CONFIGURED
        assert len(direct_channel.sent) == 1

    def test_falls_through_on_exception(self, delivery, smtp_channel, draft_channel):
        smtp_channel.available = True
        smtp_channel.outcomes = [smtplib.SMTPAuthenticationError(535, b"Username and Password not accepted")]

        result = delivery.deliver(_message(), _business())

        assert result.channel_used is Channel.DRAFT
        assert result.attempts[0].channel is Channel.SMTP
        assert result.attempts[0].classified_error.category is ErrorCategory.AUTH_EXPIRED

    def test_each_channel_tried_once(self, delivery, smtp_channel, draft_channel, direct_channel):
        smtp_channel.available = True
        for channel in (smtp_channel, draft_channel, direct_channel):
            channel.outcomes = [ConnectionError("connection reset")]

        result = delivery.deliver(_message(), _business())

        assert not result.success
        assert [a.channel for a in result.attempts] == [Channel.SMTP, Channel.DRAFT, Channel.DIRECT]
        assert [len(c.sent) for c in (smtp_channel, draft_channel, direct_channel)] == [1, 1, 1]

    def test_exhaustion_keeps_last_error(self, delivery, draft_channel, direct_channel):
        draft_channel.outcomes = [TimeoutError("timed out")]
        direct_channel.outcomes = [ChannelResult.failed("Too Many Requests", code="429")]

        result = delivery.deliver(_message(), _business())

        assert not result.success
        assert result.channel_used is None
        assert result.error.category is ErrorCategory.RATE_LIMITED
        assert result.error.title == "Too Many Emails"
        assert [a["error"] for a in result.attempts_to_dict()] == ["network", "rate_limited"]

    def test_no_channels(self, draft_channel):
        orchestrator = DeliveryOrchestrator([draft_channel])

        result = orchestrator.deliver(_message(), _business(DeliveryMode.AUTOMATIC_SEND))

        assert not result.success
        assert result.attempts == []
        assert result.error.category is ErrorCategory.SENDER_NOT_CONFIGURED

    def test_custom_classifier(self, draft_channel):
        calls = []

        def classifier(raw):
            calls.append(raw)
            return classify(raw)

        draft_channel.outcomes = [ChannelResult.failed("boom")]
        DeliveryOrchestrator([draft_channel], classifier=classifier).deliver(_message(), _business())

        assert len(calls) == 1
        assert calls[0].message == "boom"
