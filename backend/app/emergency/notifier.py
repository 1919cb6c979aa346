"""
notifier.py — Single entry point for sending one alert over one channel.

    send_channel(channel, recipient, alert) → DeliveryResult

Callers never branch on channel; the registry below is the only place a
Channel is mapped to its sender. A sender may either return
DeliveryResult(delivered=False, error=...) or raise DeliveryError.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol

from backend.app.core.errors import DeliveryError
from backend.app.emergency.channels import email, push, sms, voice, whatsapp
from backend.app.emergency.models import Alert, Channel, DeliveryResult, Recipient

logger = logging.getLogger(__name__)

ChannelSender = Callable[..., Awaitable[DeliveryResult]]


class Notifier(Protocol):
    async def send_channel(
        self,
        channel: Channel,
        recipient: Recipient,
        alert: Alert,
        *,
        escalation: bool = False,
    ) -> DeliveryResult: ...


_CHANNEL_SENDERS: Dict[Channel, ChannelSender] = {
    Channel.SMS: sms.send,
    Channel.EMAIL: email.send,
    Channel.PUSH: push.send,
    Channel.WHATSAPP: whatsapp.send,
    Channel.VOICE: voice.send,
}


class ChannelNotifier:
    """Notifier over the per-channel sender modules."""

    def __init__(self, senders: Optional[Dict[Channel, ChannelSender]] = None):
        self._senders = dict(_CHANNEL_SENDERS)
        if senders:
            self._senders.update(senders)

    async def send_channel(
        self,
        channel: Channel,
        recipient: Recipient,
        alert: Alert,
        *,
        escalation: bool = False,
    ) -> DeliveryResult:
        sender = self._senders.get(channel)
        if sender is None:
            raise DeliveryError(alert.id, channel.value, "no sender registered")

        address = recipient.address_for(channel)
        if address is None:
            raise DeliveryError(
                alert.id, channel.value,
                f"recipient {recipient.recipient_id} has no {channel.value} address",
                recipient_id=recipient.recipient_id,
            )
        return await sender(alert, recipient, address, escalation=escalation)
