"""
tradedocs -- Delivery Orchestrator

Chooses a channel ordering for a business and attempts the channels one at a
time until one succeeds:

    SMTP (own mailbox, when connected)
      -> manual-review : Draft-Provider -> Direct-Provider
      -> automatic-send: Direct-Provider

Channels that were not registered are left out of the ordering.  A failed
channel is classified and the next one is tried; a channel is never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .channels import ChannelSender
from .error_classifier import ClassifiedError, RawError, classify
from .models import BusinessProfile, Channel, DeliveryAttempt, DeliveryMode, OutboundMessage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_MODE_ORDER: dict[DeliveryMode, list[Channel]] = {
    DeliveryMode.MANUAL_REVIEW: [Channel.DRAFT, Channel.DIRECT],
    DeliveryMode.AUTOMATIC_SEND: [Channel.DIRECT],
}


@dataclass
class DeliveryResult:
    success: bool
    channel_used: Optional[Channel] = None
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    error: Optional[ClassifiedError] = None
    reference: str = ""

    def attempts_to_dict(self) -> list[dict]:
        return [a.to_dict() for a in self.attempts]


class DeliveryOrchestrator:
    """Sequential, fall-through delivery across registered email channels.

    Args:
        channels: Senders to consider, at most one per Channel.  SMS
            senders don't belong here.
        classifier: Maps a raw channel error to a ClassifiedError.
        clock: Timestamp source for DeliveryAttempt records.
    """

    def __init__(
        self,
        channels: list[ChannelSender],
        classifier: Callable[[RawError], ClassifiedError] = classify,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.channels: dict[Channel, ChannelSender] = {}
        for sender in channels:
            if sender.channel is Channel.SMS:
                raise ValueError("SMS is not an email delivery channel")
            self.channels[sender.channel] = sender
        self._classify = classifier
        self._clock = clock

    def channel_order(self, business: BusinessProfile) -> list[Channel]:
        """The channels ``deliver`` will try for this business, in order."""
        order: list[Channel] = []
        smtp = self.channels.get(Channel.SMTP)
        if smtp is not None and smtp.is_available(business):
            order.append(Channel.SMTP)
        for channel in _MODE_ORDER[business.preferred_delivery_mode]:
            sender = self.channels.get(channel)
            if sender is not None and sender.is_available(business):
                order.append(channel)
        return order

    def deliver(self, message: OutboundMessage, business: BusinessProfile) -> DeliveryResult:
        """Attempt each channel in order, stopping at the first success.

        Returns:
            DeliveryResult.  On exhaustion ``success`` is False and ``error``
            holds the last classified failure.
        """
        order = self.channel_order(business)
        if not order:
            logger.warning("No delivery channel configured for business %s", business.id)
            return DeliveryResult(
                success=False,
                error=self._classify("sender not configured: no delivery channel available"),
            )

        attempts: list[DeliveryAttempt] = []
        last_error: Optional[ClassifiedError] = None

        for channel in order:
            sender = self.channels[channel]
            raw: RawError = None
            try:
                result = sender.send(message, business)
            except Exception as exc:
                raw = exc
            else:
                if result.success:
                    attempts.append(DeliveryAttempt(channel=channel, success=True, timestamp=self._clock()))
                    logger.info("Delivered '%s' to %s via %s", message.subject, message.to, channel.value)
                    return DeliveryResult(
                        success=True,
                        channel_used=channel,
                        attempts=attempts,
                        reference=result.reference,
                    )
                raw = result.provider_error

            last_error = self._classify(raw)
            attempts.append(DeliveryAttempt(
                channel=channel,
                success=False,
                timestamp=self._clock(),
                classified_error=last_error,
            ))
            logger.warning(
                "Channel %s failed for %s (%s): %s",
                channel.value, message.to, last_error.category.value, last_error.raw,
            )

        return DeliveryResult(success=False, attempts=attempts, error=last_error)
