"""
push.py — Mobile push notification channel.

Address is the device push token when registered, otherwise the user id
(the push service resolves the user's devices). Critical and escalated
alerts request persistent interaction on the device.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from backend.app.core.config import settings
from backend.app.emergency.models import Alert, DeliveryResult, Recipient, Severity

logger = logging.getLogger(__name__)


def build_push_payload(alert: Alert, *, escalation: bool = False) -> Dict[str, Any]:
    urgent = escalation or alert.severity in (Severity.HIGH, Severity.CRITICAL)
    return {
        "notification": {
            "title": ("ESCALATED: " if escalation else "EMERGENCY: ") + alert.title,
            "body": f"{alert.location.describe()} — {alert.description}",
            "tag": alert.id,
            "data": {
                "alert_id": alert.id,
                "severity": alert.severity.value,
                "category": alert.category,
                "url": f"/emergency/alerts/{alert.id}",
            },
            "actions": [{"action": "acknowledge", "title": "Acknowledge"}],
            "requireInteraction": urgent,
        },
    }


async def send(
    alert: Alert,
    recipient: Recipient,
    address: str,
    *,
    escalation: bool = False,
    provider: Optional[str] = None,
) -> DeliveryResult:
    provider = provider or settings.PUSH_PROVIDER
    payload = build_push_payload(alert, escalation=escalation)

    if provider == "simulation":
        logger.info(
            "[PUSH] Alert %s → %s (%s): %s",
            alert.id, recipient.recipient_id, recipient.name,
            payload["notification"]["title"],
            extra={"alert_id": alert.id, "channel": "push"},
        )
        return DeliveryResult(
            delivered=True,
            provider_response={
                "mode": "simulated",
                "target": address[:12] + ("..." if len(address) > 12 else ""),
                "payload_size": len(str(payload)),
            },
        )

    return DeliveryResult(delivered=False, error=f"Unknown push provider: {provider}")
