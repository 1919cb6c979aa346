"""
whatsapp.py — WhatsApp message channel.

Only users who opted in (whatsapp_enabled) have a WhatsApp address.
Messages use WhatsApp's *bold* markup and are not length-limited like SMS.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.emergency.models import Alert, DeliveryResult, Recipient

logger = logging.getLogger(__name__)


def format_message(alert: Alert, *, escalation: bool = False) -> str:
    label = "ESCALATED ALERT" if escalation else "EMERGENCY ALERT"
    return (
        f"*{label} ({alert.severity.value.upper()})*\n"
        f"*{alert.title}*\n"
        f"Location: {alert.location.describe()}\n"
        f"{alert.description}\n"
        f"Ref: {alert.id}"
    )


async def send(
    alert: Alert,
    recipient: Recipient,
    address: str,
    *,
    escalation: bool = False,
    provider: Optional[str] = None,
) -> DeliveryResult:
    provider = provider or settings.WHATSAPP_PROVIDER
    text = format_message(alert, escalation=escalation)

    if provider == "simulation":
        logger.info(
            "[WHATSAPP] Alert %s → %s (%s)",
            alert.id, address, recipient.name,
            extra={"alert_id": alert.id, "channel": "whatsapp"},
        )
        return DeliveryResult(
            delivered=True,
            provider_response={"mode": "simulated", "phone": address, "length": len(text)},
        )

    return DeliveryResult(delivered=False, error=f"Unknown WhatsApp provider: {provider}")
