"""
sms.py — SMS delivery channel.

    App  →  SMS gateway API  →  Carrier  →  Handset

Body is trimmed to a single GSM 7-bit segment (160 chars):

    "EMERGENCY: {title} - {parish}. {description} Ref:{id}"

Escalations use the "ESCALATED:" prefix instead. Only the "simulation"
provider is wired in; any other configured provider reports a failed
delivery so the dispatcher falls back.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.emergency.models import Alert, DeliveryResult, Recipient

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_sms(alert: Alert, *, escalation: bool = False) -> str:
    """Render the SMS body within the 160-char segment limit."""
    prefix = "ESCALATED: " if escalation else "EMERGENCY: "
    suffix = f" Ref:{alert.id[-8:]}"
    body = f"{alert.title} - {alert.location.describe()}. {alert.description}".strip()

    available = SMS_MAX_GSM7 - len(prefix) - len(suffix)
    if len(body) > available:
        body = body[: available - 3] + "..."
    return f"{prefix}{body}{suffix}"


async def send(
    alert: Alert,
    recipient: Recipient,
    address: str,
    *,
    escalation: bool = False,
    provider: Optional[str] = None,
) -> DeliveryResult:
    provider = provider or settings.SMS_PROVIDER
    body = format_sms(alert, escalation=escalation)

    if provider == "simulation":
        logger.info(
            "[SMS] Alert %s → %s (%s): %d chars",
            alert.id, address, recipient.name, len(body),
            extra={"alert_id": alert.id, "channel": "sms"},
        )
        return DeliveryResult(
            delivered=True,
            provider_response={
                "mode": "simulated",
                "phone": address,
                "message_length": len(body),
                "segments": 1 + (len(body) - 1) // SMS_MAX_GSM7,
            },
        )

    return DeliveryResult(delivered=False, error=f"Unknown SMS provider: {provider}")
