"""
models.py — Shared data structures for the emergency alert engine.

Defines:
    • Severity       — alert severity, drives the escalation deadline
    • AlertStatus    — lifecycle states and the legal transitions between them
    • Channel        — closed set of notification channels
    • LedgerAction   — transition names persisted to the ledger
    • Alert          — the central entity (immutable; transitions copy it)
    • Recipient      — a user or bare contact with per-channel addresses
    • DeliveryResult / DeliveryAttempt / DispatchReport — fan-out tracking
    • ChannelConfig / EscalationRule — configuration exposed to the UI
    • AlertStatistics — dashboard counters

═══════════════════════════════════════════════════════════════════════════
ALERT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

        create
          │
          ▼
      ┌────────┐  timer expires  ┌───────────┐
      │ active │ ──────────────▶ │ escalated │
      └────────┘                 └───────────┘
          │  acknowledge              │  acknowledge
          ▼                           ▼
      ┌──────────────┐ ◀──────────────┘
      │ acknowledged │
      └──────────────┘
          │
          ▼   resolve (from any non-resolved state)
      ┌──────────┐
      │ resolved │   terminal
      └──────────┘

Only ``active`` alerts carry an escalation timer.

═══════════════════════════════════════════════════════════════════════════
CHANNEL ADDRESSING
═══════════════════════════════════════════════════════════════════════════

    Channel     Address used            Requires
    ────────    ────────────────────    ─────────────────────────
    sms         phone                   sms_enabled
    whatsapp    phone                   whatsapp_enabled
    voice       phone                   —
    email       email                   —
    push        push_token or user_id   —
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    """Alert severity, immutable after creation."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    ACTIVE       = "active"        # awaiting acknowledgment, timer armed
    ACKNOWLEDGED = "acknowledged"  # someone is handling it
    ESCALATED    = "escalated"     # nobody acknowledged in time
    RESOLVED     = "resolved"      # terminal


class Channel(str, Enum):
    """Notification channels. Adding one = a member here + one sender."""
    SMS      = "sms"
    EMAIL    = "email"
    PUSH     = "push"
    WHATSAPP = "whatsapp"
    VOICE    = "voice"


class LedgerAction(str, Enum):
    """Transition names persisted in ledger records."""
    CREATE      = "create"
    ACKNOWLEDGE = "acknowledge"
    RESOLVE     = "resolve"
    ESCALATE    = "escalate"


class DeliveryStatus(str, Enum):
    """Outcome of one recipient/channel delivery."""
    DELIVERED = "delivered"
    FAILED    = "failed"     # all retries exhausted
    SKIPPED   = "skipped"    # recipient has no address for the channel


# Legal target states per source state
ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset({
        AlertStatus.ACKNOWLEDGED,
        AlertStatus.ESCALATED,
        AlertStatus.RESOLVED,
    }),
    AlertStatus.ESCALATED: frozenset({
        AlertStatus.ACKNOWLEDGED,
        AlertStatus.RESOLVED,
    }),
    AlertStatus.ACKNOWLEDGED: frozenset({
        AlertStatus.RESOLVED,
    }),
    AlertStatus.RESOLVED: frozenset(),
}

# Status each ledger action moves an alert into
ACTION_STATUS: Dict[LedgerAction, AlertStatus] = {
    LedgerAction.CREATE: AlertStatus.ACTIVE,
    LedgerAction.ACKNOWLEDGE: AlertStatus.ACKNOWLEDGED,
    LedgerAction.ESCALATE: AlertStatus.ESCALATED,
    LedgerAction.RESOLVE: AlertStatus.RESOLVED,
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """Where the emergency is. Parish is mandatory."""
    parish: str
    polling_station: Optional[str] = None
    coordinates: Optional[Tuple[float, float]] = None  # (lat, lng)

    def describe(self) -> str:
        if self.polling_station:
            return f"{self.parish}, {self.polling_station}"
        return self.parish

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parish": self.parish,
            "polling_station": self.polling_station,
            "coordinates": (
                {"lat": self.coordinates[0], "lng": self.coordinates[1]}
                if self.coordinates else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        coords = data.get("coordinates")
        return cls(
            parish=str(data["parish"]),
            polling_station=data.get("polling_station"),
            coordinates=(
                (float(coords["lat"]), float(coords["lng"])) if coords else None
            ),
        )


@dataclass(frozen=True)
class Alert:
    """
    An emergency alert.

    Frozen: every transition produces a new instance via
    ``dataclasses.replace`` so snapshots handed to the ledger, the store
    and background fan-out tasks can never be mutated behind their back.
    """
    id: str
    title: str
    description: str
    category: str
    severity: Severity
    location: Location
    created_by: Optional[str]
    created_at: datetime
    status: AlertStatus = AlertStatus.ACTIVE
    channels: Tuple[Channel, ...] = ()
    recipients: Tuple[str, ...] = ()
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status is not AlertStatus.RESOLVED

    @property
    def uses_dynamic_recipients(self) -> bool:
        return not self.recipients

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "severity": self.severity.value,
            "location": self.location.to_dict(),
            "status": self.status.value,
            "channels": [c.value for c in self.channels],
            "recipients": list(self.recipients),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "escalated_at": _iso(self.escalated_at),
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        """
        Rebuild an alert from a ledger snapshot.

        Raises KeyError / ValueError / TypeError on malformed input; replay
        treats those as a skippable record.
        """
        created_at = _parse_dt(data["created_at"])
        if created_at is None:
            raise ValueError("created_at is empty")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            category=str(data.get("category", "other")),
            severity=Severity(data["severity"]),
            location=Location.from_dict(data["location"]),
            created_by=_opt_str(data.get("created_by")),
            created_at=created_at,
            status=AlertStatus(data.get("status", AlertStatus.ACTIVE.value)),
            channels=tuple(Channel(c) for c in data.get("channels", [])),
            recipients=tuple(str(r) for r in data.get("recipients", [])),
            acknowledged_by=_opt_str(data.get("acknowledged_by")),
            acknowledged_at=_parse_dt(data.get("acknowledged_at")),
            escalated_at=_parse_dt(data.get("escalated_at")),
            resolved_by=_opt_str(data.get("resolved_by")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            resolution=data.get("resolution"),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Recipients
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Recipient:
    """
    A notification target.

    Directory users carry ``user_id``; bare contacts given explicitly on an
    alert (an email address or phone number) do not.
    """
    recipient_id: str
    name: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    parish: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    sms_enabled: bool = True
    whatsapp_enabled: bool = False

    def address_for(self, channel: Channel) -> Optional[str]:
        """Channel-specific address, or None if the recipient can't receive it."""
        if channel is Channel.EMAIL:
            return self.email or None
        if channel is Channel.SMS:
            return (self.phone or None) if self.sms_enabled else None
        if channel is Channel.WHATSAPP:
            return (self.phone or None) if self.whatsapp_enabled else None
        if channel is Channel.VOICE:
            return self.phone or None
        if channel is Channel.PUSH:
            return self.push_token or self.user_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "user_id": self.user_id,
            "role": self.role,
            "parish": self.parish,
            "phone": self.phone,
            "email": self.email,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Tracking
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    """What a notifier reports for one send."""
    delivered: bool
    error: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryAttempt:
    """Final outcome of one recipient/channel delivery (after retries)."""
    channel: Channel
    recipient_id: str
    status: DeliveryStatus
    address: Optional[str] = None
    attempted_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    error_message: Optional[str] = None
    fallback_for: Optional[Channel] = None  # set when this was a fallback hop

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "address": self.address,
            "attempted_at": self.attempted_at.isoformat(),
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "fallback_for": self.fallback_for.value if self.fallback_for else None,
        }


@dataclass
class DispatchReport:
    """Summary of one fan-out (initial alert or escalation)."""
    alert_id: str
    escalation: bool = False
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def _by_recipient(self) -> Dict[str, List[DeliveryAttempt]]:
        grouped: Dict[str, List[DeliveryAttempt]] = {}
        for attempt in self.attempts:
            grouped.setdefault(attempt.recipient_id, []).append(attempt)
        return grouped

    @property
    def total_recipients(self) -> int:
        return len(self._by_recipient())

    @property
    def recipients_reached(self) -> int:
        return sum(
            1 for attempts in self._by_recipient().values()
            if any(a.status is DeliveryStatus.DELIVERED for a in attempts)
        )

    @property
    def recipients_failed(self) -> int:
        return self.total_recipients - self.recipients_reached

    @property
    def reach_rate(self) -> float:
        if self.total_recipients == 0:
            return 0.0
        return self.recipients_reached / self.total_recipients

    def attempts_for(
        self,
        recipient_id: str,
        channel: Optional[Channel] = None,
    ) -> List[DeliveryAttempt]:
        return [
            a for a in self.attempts
            if a.recipient_id == recipient_id
            and (channel is None or a.channel is channel)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "escalation": self.escalation,
            "total_recipients": self.total_recipients,
            "recipients_reached": self.recipients_reached,
            "recipients_failed": self.recipients_failed,
            "reach_rate": f"{self.reach_rate:.1%}",
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "attempts": [a.to_dict() for a in self.attempts],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Configuration Views
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChannelConfig:
    id: str
    name: str
    type: Channel
    enabled: bool
    priority: int  # lower = preferred

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "enabled": self.enabled,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class EscalationRule:
    """Who gets told, and how, when an alert of given severity escalates."""
    id: str
    name: str
    severities: Tuple[Severity, ...]
    categories: Tuple[str, ...]
    time_threshold: float  # minutes
    escalate_to: Tuple[str, ...]  # directory roles
    channels: Tuple[Channel, ...]
    enabled: bool = True

    def applies_to(self, alert: Alert) -> bool:
        return self.enabled and alert.severity in self.severities

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "severity": [s.value for s in self.severities],
            "categories": list(self.categories),
            "time_threshold": self.time_threshold,
            "escalate_to": list(self.escalate_to),
            "channels": [c.value for c in self.channels],
            "enabled": self.enabled,
        }


@dataclass
class AlertStatistics:
    """Dashboard counters."""
    active_alerts: int = 0
    total_alerts: int = 0
    recent_alerts: int = 0
    escalated_alerts: int = 0
    avg_response_time: float = 0.0  # minutes from creation to acknowledgment
    total_recipients: int = 0
    success_rate: float = 0.0       # % of recipients reached
    severity_breakdown: Dict[str, int] = field(
        default_factory=lambda: {
            Severity.CRITICAL.value: 0,
            Severity.HIGH.value: 0,
            Severity.MEDIUM.value: 0,
            Severity.LOW.value: 0,
        }
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_alerts": self.active_alerts,
            "total_alerts": self.total_alerts,
            "recent_alerts": self.recent_alerts,
            "escalated_alerts": self.escalated_alerts,
            "avg_response_time": self.avg_response_time,
            "total_recipients": self.total_recipients,
            "success_rate": self.success_rate,
            "severity_breakdown": dict(self.severity_breakdown),
        }
