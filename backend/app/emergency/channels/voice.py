"""
voice.py — Automated voice call channel.

Last hop of the fallback chain. The script is read twice by the provider's
text-to-speech, so it is kept short and spells out the reference.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.emergency.models import Alert, DeliveryResult, Recipient

logger = logging.getLogger(__name__)


def build_script(alert: Alert, *, escalation: bool = False) -> str:
    opening = (
        "This is an escalated emergency alert that has not been acknowledged."
        if escalation
        else "This is an emergency alert."
    )
    return (
        f"{opening} Severity {alert.severity.value}. {alert.title}. "
        f"Location: {alert.location.describe()}. "
        f"Please acknowledge alert reference {' '.join(alert.id[-4:])}."
    )


async def send(
    alert: Alert,
    recipient: Recipient,
    address: str,
    *,
    escalation: bool = False,
    provider: Optional[str] = None,
) -> DeliveryResult:
    provider = provider or settings.VOICE_PROVIDER
    script = build_script(alert, escalation=escalation)

    if provider == "simulation":
        logger.info(
            "[VOICE] Alert %s → %s (%s): %d-word script",
            alert.id, address, recipient.name, len(script.split()),
            extra={"alert_id": alert.id, "channel": "voice"},
        )
        return DeliveryResult(
            delivered=True,
            provider_response={"mode": "simulated", "phone": address},
        )

    return DeliveryResult(delivered=False, error=f"Unknown voice provider: {provider}")
