"""
Health check aggregation — deep health probe for the alert engine.

Checks:
    • Ledger reachability (in-memory or audit_logs table)
    • Escalation timers: every active alert carries exactly one
    • Notification channels: at least one enabled

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings
from backend.app.emergency.ledger import ALERT_ENTITY
from backend.app.emergency.models import AlertStatus

if TYPE_CHECKING:
    from backend.app.emergency.engine import EmergencyAlertEngine

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_ledger(engine: "EmergencyAlertEngine") -> ComponentHealth:
    """Run a cheap ledger query."""
    comp = ComponentHealth(name="ledger")
    start = time.monotonic()
    try:
        await engine.ledger.query(entity_type=ALERT_ENTITY, entity_id="__health__")
        comp.status = HealthStatus.HEALTHY
        comp.message = "Ledger reachable"
        comp.details = {"backend": settings.LEDGER_BACKEND}
        if settings.LEDGER_BACKEND == "sql":
            comp.details["url"] = settings.DATABASE_URL.split("@")[-1]
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_scheduler(engine: "EmergencyAlertEngine") -> ComponentHealth:
    """Compare armed timers with the active alerts in the store."""
    comp = ComponentHealth(name="escalation_scheduler")
    start = time.monotonic()

    active = {a.id for a in engine.active_alerts() if a.status is AlertStatus.ACTIVE}
    armed = set(engine.scheduler.armed_ids())
    unarmed = sorted(active - armed)
    stray = sorted(armed - active)

    if unarmed or stray:
        comp.status = HealthStatus.DEGRADED
        comp.message = (
            f"{len(unarmed)} active alerts without a timer, "
            f"{len(stray)} timers without an active alert"
        )
    else:
        comp.status = HealthStatus.HEALTHY
        comp.message = f"{len(armed)} escalation timers armed"

    comp.details = {"armed": len(armed), "unarmed": unarmed, "stray": stray}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(engine: "EmergencyAlertEngine") -> ComponentHealth:
    """At least one notification channel must be enabled."""
    comp = ComponentHealth(name="notification_channels")
    start = time.monotonic()

    configs = engine.list_channels()
    enabled = [c.id for c in configs if c.enabled]
    disabled = [c.id for c in configs if not c.enabled]

    if not enabled:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No notification channel enabled"
    else:
        comp.status = HealthStatus.HEALTHY
        comp.message = f"{len(enabled)} channels enabled"

    comp.details = {"enabled": enabled, "disabled": disabled}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(engine: "EmergencyAlertEngine") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_ledger(engine),
        check_scheduler(engine),
        check_channels(engine),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
