"""
policy.py — Escalation deadlines, channel configuration and delivery retry.

═══════════════════════════════════════════════════════════════════════════
ESCALATION DEADLINES
═══════════════════════════════════════════════════════════════════════════

    Severity    Minutes until escalation (default table)
    ────────    ────────────────────────────────────────
    critical     5
    high        15
    medium      30
    low         60

The table lives in settings.ESCALATION_DELAY_MINUTES; this module is the
only place that turns a severity into a delay.

═══════════════════════════════════════════════════════════════════════════
CHANNEL FALLBACK CHAIN
═══════════════════════════════════════════════════════════════════════════

When delivery on a channel fails for a recipient, the dispatcher walks:

    whatsapp ─▶ sms ─▶ voice
    push     ─▶ sms ─▶ voice

Email has no fallback. A hop is skipped if it is disabled, already one of
the alert's requested channels, or the recipient lacks its address.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional

from backend.app.core.config import settings
from backend.app.emergency.models import (
    Alert,
    Channel,
    ChannelConfig,
    EscalationRule,
    Severity,
)


# ═══════════════════════════════════════════════════════════════════════════
# Escalation Delays
# ═══════════════════════════════════════════════════════════════════════════

def escalation_delay(
    severity: Severity,
    table: Optional[Mapping[str, float]] = None,
) -> timedelta:
    """Severity → time allowed before an unacknowledged alert escalates."""
    table = table if table is not None else settings.ESCALATION_DELAY_MINUTES
    minutes = table.get(severity.value)
    if minutes is None:
        minutes = table.get(Severity.MEDIUM.value, 30)
    return timedelta(minutes=float(minutes))


# ═══════════════════════════════════════════════════════════════════════════
# Channels
# ═══════════════════════════════════════════════════════════════════════════

_CHANNEL_NAMES: Dict[Channel, str] = {
    Channel.SMS: "SMS Messages",
    Channel.EMAIL: "Email Notifications",
    Channel.PUSH: "Push Notifications",
    Channel.WHATSAPP: "WhatsApp Messages",
    Channel.VOICE: "Voice Calls",
}

_CHANNEL_PRIORITY: Dict[Channel, int] = {
    Channel.SMS: 1,
    Channel.EMAIL: 2,
    Channel.PUSH: 3,
    Channel.WHATSAPP: 4,
    Channel.VOICE: 5,
}

CHANNEL_FALLBACKS: Dict[Channel, Channel] = {
    Channel.WHATSAPP: Channel.SMS,
    Channel.PUSH: Channel.SMS,
    Channel.SMS: Channel.VOICE,
}


def build_channel_configs(
    disabled: Optional[Iterable[str]] = None,
) -> List[ChannelConfig]:
    """Channel list ordered by priority, with the configured ones disabled."""
    disabled_set = set(disabled if disabled is not None else settings.DISABLED_CHANNELS)
    return sorted(
        (
            ChannelConfig(
                id=channel.value,
                name=_CHANNEL_NAMES[channel],
                type=channel,
                enabled=channel.value not in disabled_set,
                priority=_CHANNEL_PRIORITY[channel],
            )
            for channel in Channel
        ),
        key=lambda c: c.priority,
    )


def fallback_chain(channel: Channel) -> List[Channel]:
    """Channels to try, in order, after ``channel`` fails."""
    chain: List[Channel] = []
    nxt = CHANNEL_FALLBACKS.get(channel)
    while nxt is not None and nxt is not channel and nxt not in chain:
        chain.append(nxt)
        nxt = CHANNEL_FALLBACKS.get(nxt)
    return chain


# ═══════════════════════════════════════════════════════════════════════════
# Escalation Rules
# ═══════════════════════════════════════════════════════════════════════════

def build_escalation_rules(
    delays: Optional[Mapping[str, float]] = None,
) -> List[EscalationRule]:
    """Default routing for escalations; thresholds come from the delay table."""

    def threshold(*severities: Severity) -> float:
        return min(
            escalation_delay(s, delays).total_seconds() / 60 for s in severities
        )

    return [
        EscalationRule(
            id="critical_immediate",
            name="Critical Alert Escalation",
            severities=(Severity.CRITICAL,),
            categories=("security_threat", "violence", "medical_emergency"),
            time_threshold=threshold(Severity.CRITICAL),
            escalate_to=("emergency_coordinator", "election_commission"),
            channels=(Channel.SMS, Channel.VOICE),
        ),
        EscalationRule(
            id="high_priority",
            name="High Priority Escalation",
            severities=(Severity.HIGH,),
            categories=("equipment_failure", "crowd_control"),
            time_threshold=threshold(Severity.HIGH),
            escalate_to=("field_supervisor",),
            channels=(Channel.SMS, Channel.EMAIL),
        ),
        EscalationRule(
            id="standard_escalation",
            name="Standard Escalation",
            severities=(Severity.MEDIUM, Severity.LOW),
            categories=("other",),
            time_threshold=threshold(Severity.MEDIUM, Severity.LOW),
            escalate_to=("coordinator",),
            channels=(Channel.EMAIL,),
        ),
    ]


def match_rule(alert: Alert, rules: Iterable[EscalationRule]) -> Optional[EscalationRule]:
    """
    Pick the rule for an alert: severity must match; among those, a rule
    listing the alert's category wins over one that doesn't.
    """
    candidates = [r for r in rules if r.applies_to(alert)]
    for rule in candidates:
        if alert.category in rule.categories:
            return rule
    return candidates[0] if candidates else None


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Retry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Retry parameters for one recipient/channel send."""
    max_retries: int
    backoff_base_seconds: float
    backoff_type: str = "exponential"  # or "linear"


def default_retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=settings.DELIVERY_MAX_RETRIES,
        backoff_base_seconds=settings.DELIVERY_BACKOFF_SECONDS,
    )


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay in seconds before retry number ``attempt`` (1-based).

    exponential: base × 2^(attempt-1)   linear: base × attempt
    """
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt
