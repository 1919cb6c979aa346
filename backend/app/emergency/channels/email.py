"""
email.py — Email delivery channel.

    Subject: EMERGENCY ALERT: {title}        (or ESCALATED ALERT: {title})
    Body:    HTML card with severity, location, category, description,
             time, plus a plain-text alternative

Email is the channel used for the fixed escalation contacts, so an
escalated alert always reaches them even if no phone numbers are known.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.emergency.models import Alert, DeliveryResult, Recipient, Severity

logger = logging.getLogger(__name__)

_SEVERITY_COLOURS = {
    Severity.LOW: "#4CAF50",
    Severity.MEDIUM: "#FF9800",
    Severity.HIGH: "#F44336",
    Severity.CRITICAL: "#B71C1C",
}


def build_subject(alert: Alert, *, escalation: bool = False) -> str:
    label = "ESCALATED ALERT" if escalation else "EMERGENCY ALERT"
    return f"{label}: {alert.title}"


def build_html_body(alert: Alert, *, escalation: bool = False) -> str:
    colour = _SEVERITY_COLOURS.get(alert.severity, "#FF9800")
    heading = "Escalated Emergency Alert" if escalation else "Emergency Alert"
    footer = (
        '<p style="color:red;"><strong>This alert has been escalated due to '
        "lack of acknowledgment.</strong></p>"
        if escalation
        else "<p>Please respond immediately to acknowledge this alert.</p>"
    )
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;">
        <h2 style="margin:0;">{heading} - {alert.severity.value.upper()}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;">
        <p><strong>Alert ID:</strong> {alert.id}</p>
        <p><strong>Location:</strong> {alert.location.describe()}</p>
        <p><strong>Category:</strong> {alert.category}</p>
        <p><strong>Description:</strong> {alert.description}</p>
        <p><strong>Created:</strong> {alert.created_at.strftime('%Y-%m-%d %H:%M UTC')}</p>
        {footer}
      </div>
    </div>
    """


def build_plain_body(alert: Alert, *, escalation: bool = False) -> str:
    heading = "ESCALATED EMERGENCY ALERT" if escalation else "EMERGENCY ALERT"
    return (
        f"{heading} - {alert.severity.value.upper()}\n"
        f"Alert ID: {alert.id}\n"
        f"Location: {alert.location.describe()}\n"
        f"Category: {alert.category}\n\n"
        f"{alert.title}\n"
        f"{alert.description}\n\n"
        f"Created: {alert.created_at.strftime('%Y-%m-%d %H:%M UTC')}\n"
    )


async def send(
    alert: Alert,
    recipient: Recipient,
    address: str,
    *,
    escalation: bool = False,
    provider: Optional[str] = None,
) -> DeliveryResult:
    provider = provider or settings.EMAIL_PROVIDER
    subject = build_subject(alert, escalation=escalation)

    if provider == "simulation":
        html_body = build_html_body(alert, escalation=escalation)
        logger.info(
            "[EMAIL] Alert %s → %s (%s): Subject='%s'",
            alert.id, address, recipient.name, subject,
            extra={"alert_id": alert.id, "channel": "email"},
        )
        return DeliveryResult(
            delivered=True,
            provider_response={
                "mode": "simulated",
                "from": settings.EMAIL_FROM,
                "to": address,
                "subject": subject,
                "html_size": len(html_body),
                "plain_size": len(build_plain_body(alert, escalation=escalation)),
            },
        )

    return DeliveryResult(delivered=False, error=f"Unknown email provider: {provider}")
