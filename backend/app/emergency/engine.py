"""
engine.py — Emergency alert lifecycle orchestration.

This is the central coordinator that:
    1. Validates and creates alerts, recording each in the ledger
    2. Arms a severity-driven escalation timer for every active alert
    3. Fans new alerts out to their recipients in the background
    4. Applies acknowledge / resolve transitions on behalf of users
    5. Escalates alerts nobody acknowledged in time, notifying a
       higher-authority contact set
    6. Rebuilds its open-alert index from the ledger on start-up
    7. Serves statistics and configuration to the dashboard

═══════════════════════════════════════════════════════════════════════════
TRANSITION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  create             │  validate → ledger append → store.put
    │                     │  → arm timer → background fan-out
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  acknowledge        │  status check → ledger append
    │  resolve            │  → cancel timer → store.put / store.remove
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  timer fires        │  re-read status from the store
    │  → escalate         │  still active?  → ledger append → store.put
    │                     │                   → escalation fan-out
    │                     │  otherwise      → no-op
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
SERIALISATION
═══════════════════════════════════════════════════════════════════════════

Every transition on alert X runs under X's asyncio.Lock, so an acknowledge
and a timer-fired escalate for X never interleave: whichever takes the lock
second sees the other's result. Different alerts never share a lock.

The ledger append happens before any in-memory change. If it fails the
transition raises PersistenceError and the store and the timer index are
left exactly as they were.

Fan-out runs in background tasks and never fails or delays the transition
that triggered it; drain() awaits them (tests, shutdown).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from backend.app.core.config import settings
from backend.app.core.errors import (
    EmergencyPlatformError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from backend.app.emergency.clock import Clock, SystemClock
from backend.app.emergency.dispatcher import NotificationDispatcher
from backend.app.emergency.ledger import ALERT_ENTITY, Ledger, LedgerRecord
from backend.app.emergency.models import (
    Alert,
    AlertStatistics,
    AlertStatus,
    Channel,
    ChannelConfig,
    DispatchReport,
    EscalationRule,
    LedgerAction,
    Location,
    Severity,
    can_transition,
    generate_alert_id,
)
from backend.app.emergency.policy import (
    build_channel_configs,
    build_escalation_rules,
    escalation_delay,
    match_rule,
)
from backend.app.emergency.scheduler import EscalationScheduler
from backend.app.emergency.store import AlertStore, replay

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS: Tuple[Channel, ...] = (Channel.EMAIL,)
STATISTICS_WINDOW = timedelta(hours=24)


# ═══════════════════════════════════════════════════════════════════════════
# Input Validation
# ═══════════════════════════════════════════════════════════════════════════

def _parse_severity(value: Union[Severity, str, None]) -> Severity:
    if value is None or value == "":
        raise ValidationError("severity is required", field="severity")
    try:
        return Severity(value)
    except ValueError:
        raise ValidationError(
            f"Unknown severity '{value}'",
            field="severity",
            allowed=[s.value for s in Severity],
        ) from None


def _parse_channels(values: Optional[Iterable[Union[Channel, str]]]) -> Tuple[Channel, ...]:
    if values is None:
        return DEFAULT_CHANNELS
    channels: List[Channel] = []
    for value in values:
        try:
            channel = Channel(value)
        except ValueError:
            raise ValidationError(
                f"Unknown channel '{value}'",
                field="channels",
                allowed=[c.value for c in Channel],
            ) from None
        if channel not in channels:
            channels.append(channel)
    if not channels:
        raise ValidationError("At least one channel is required", field="channels")
    return tuple(channels)


def _clean_recipients(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    cleaned: List[str] = []
    for value in values or ():
        entry = str(value).strip()
        if entry and entry not in cleaned:
            cleaned.append(entry)
    return tuple(cleaned)


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyAlertEngine:
    """
    Owns the open-alert index, the timer index and the per-alert locks.

    Usage:
        engine = EmergencyAlertEngine(InMemoryLedger(), dispatcher)
        await engine.start()
        alert = await engine.create(
            title="Ballot box seized", severity="critical", parish="Kingston",
            channels=["sms", "email"], created_by="observer-17",
        )
        await engine.acknowledge(alert.id, "coordinator-2")
        await engine.resolve(alert.id, "coordinator-2", "Police on site")
    """

    def __init__(
        self,
        ledger: Ledger,
        dispatcher: NotificationDispatcher,
        *,
        scheduler: Optional[EscalationScheduler] = None,
        clock: Optional[Clock] = None,
        escalation_delays: Optional[Mapping[str, float]] = None,
        escalation_rules: Optional[Sequence[EscalationRule]] = None,
        channel_configs: Optional[Sequence[ChannelConfig]] = None,
        escalation_retry_seconds: Optional[float] = None,
    ):
        self._clock = clock or SystemClock()
        self._ledger = ledger
        self._store = AlertStore(ledger)
        self._scheduler = scheduler or EscalationScheduler(self._clock)
        self._dispatcher = dispatcher
        self._delays: Dict[str, float] = dict(
            escalation_delays if escalation_delays is not None
            else settings.ESCALATION_DELAY_MINUTES
        )
        self._rules = (
            list(escalation_rules) if escalation_rules is not None
            else build_escalation_rules(self._delays)
        )
        self._channel_configs = (
            list(channel_configs) if channel_configs is not None
            else build_channel_configs()
        )
        self._retry_seconds = (
            escalation_retry_seconds if escalation_retry_seconds is not None
            else settings.ESCALATION_RETRY_SECONDS
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reports: Dict[str, DispatchReport] = {}
        self._escalation_reports: Dict[str, DispatchReport] = {}
        self._fanouts: Set[asyncio.Task] = set()

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def store(self) -> AlertStore:
        return self._store

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Startup ───────────────────────────────────────────────────────────

    async def start(self) -> List[Alert]:
        return await self.rebuild()

    async def rebuild(self) -> List[Alert]:
        """
        Reload open alerts from the ledger and re-arm their timers.

        An active alert keeps its original deadline: one created 20 of its
        30 minutes ago escalates 10 minutes from now, and one already past
        its deadline escalates immediately.
        """
        t0 = time.perf_counter()
        for alert_id in self._scheduler.armed_ids():
            self._scheduler.cancel(alert_id)

        retained = await self._store.rebuild()
        now = self._clock.now()
        armed = 0
        for alert in retained:
            if alert.status is not AlertStatus.ACTIVE:
                continue
            deadline = alert.created_at + escalation_delay(alert.severity, self._delays)
            remaining = max((deadline - now).total_seconds(), 0.0)
            self._scheduler.arm(alert.id, remaining, self._on_timer)
            armed += 1

        logger.info(
            "Engine rebuilt: %d open alerts, %d escalation timers re-armed (%.1f ms)",
            len(retained), armed, (time.perf_counter() - t0) * 1000,
        )
        return retained

    # ── Internals ─────────────────────────────────────────────────────────

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        return lock

    async def _append(
        self,
        action: LedgerAction,
        alert: Alert,
        actor_id: Optional[str],
        timestamp: datetime,
    ) -> LedgerRecord:
        record = LedgerRecord(
            action=action.value,
            entity_type=ALERT_ENTITY,
            entity_id=alert.id,
            actor_id=actor_id,
            timestamp=timestamp,
            snapshot=alert.to_dict(),
        )
        try:
            return await self._ledger.append(record)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error(
                "Ledger append failed for %s %s: %s", action.value, alert.id, exc,
                extra={"alert_id": alert.id, "action": action.value},
            )
            raise PersistenceError("append", str(exc), entity_id=alert.id) from exc

    async def _history(self, alert_id: Optional[str] = None) -> Dict[str, Alert]:
        if alert_id is None:
            return await self._store.history()
        try:
            records = await self._ledger.query(entity_type=ALERT_ENTITY, entity_id=alert_id)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError("query", str(exc), entity_id=alert_id) from exc
        return replay(records)

    async def _require_open(self, alert_id: str, attempted: str) -> Alert:
        alert = self._store.get(alert_id)
        if alert is not None:
            return alert
        past = (await self._history(alert_id)).get(alert_id)
        self._locks.pop(alert_id, None)
        if past is not None:
            raise InvalidStateError(alert_id, past.status.value, attempted)
        raise NotFoundError("EmergencyAlert", id=alert_id)

    def _spawn_fanout(
        self,
        alert: Alert,
        *,
        escalation: bool = False,
        rule: Optional[EscalationRule] = None,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_fanout(alert, escalation, rule),
            name=f"fanout-{alert.id}{'-escalation' if escalation else ''}",
        )
        self._fanouts.add(task)
        task.add_done_callback(self._fanouts.discard)

    async def _run_fanout(
        self,
        alert: Alert,
        escalation: bool,
        rule: Optional[EscalationRule],
    ) -> None:
        try:
            if escalation:
                report = await self._dispatcher.dispatch_escalation(alert, rule)
            else:
                report = await self._dispatcher.dispatch(alert)
        except Exception:
            logger.exception(
                "Fan-out crashed for alert %s", alert.id,
                extra={"alert_id": alert.id},
            )
            return
        target = self._escalation_reports if escalation else self._reports
        target[alert.id] = report

    # ── Transitions ───────────────────────────────────────────────────────

    async def create(
        self,
        *,
        title: str,
        description: str = "",
        severity: Union[Severity, str, None] = None,
        category: str = "other",
        parish: Optional[str] = None,
        polling_station: Optional[str] = None,
        coordinates: Optional[Tuple[float, float]] = None,
        channels: Optional[Iterable[Union[Channel, str]]] = None,
        recipients: Optional[Iterable[str]] = None,
        created_by: Optional[str] = None,
    ) -> Alert:
        """
        Create an active alert, arm its escalation timer and start fan-out.

        Parameters
        ----------
        severity : required; one of low / medium / high / critical
        parish : required; anchors parish-scoped recipient resolution
        channels : defaults to email only; an explicit empty list is invalid
        recipients : contact strings or user ids; empty → dynamic targeting

        Raises
        ------
        ValidationError   missing severity / parish / title, unknown channel
        PersistenceError  the creation record could not be appended
        """
        sev = _parse_severity(severity)
        if parish is None or not str(parish).strip():
            raise ValidationError("location.parish is required", field="location.parish")
        if not title or not title.strip():
            raise ValidationError("title is required", field="title")

        now = self._clock.now()
        alert = Alert(
            id=generate_alert_id(),
            title=title.strip(),
            description=description or "",
            category=category or "other",
            severity=sev,
            location=Location(
                parish=str(parish).strip(),
                polling_station=polling_station or None,
                coordinates=tuple(coordinates) if coordinates else None,
            ),
            created_by=created_by,
            created_at=now,
            channels=_parse_channels(channels),
            recipients=_clean_recipients(recipients),
        )

        lock = self._lock_for(alert.id)
        try:
            async with lock:
                await self._append(LedgerAction.CREATE, alert, created_by, now)
                self._store.put(alert)
                self._scheduler.arm(
                    alert.id, escalation_delay(sev, self._delays), self._on_timer,
                )
        except PersistenceError:
            self._locks.pop(alert.id, None)
            raise

        self._spawn_fanout(alert)
        logger.info(
            "Emergency alert created: %s [%s] %s in %s",
            alert.id, sev.value, alert.title, alert.location.describe(),
            extra={
                "alert_id": alert.id,
                "severity": sev.value,
                "action": LedgerAction.CREATE.value,
                "actor_id": created_by,
            },
        )
        return alert

    async def acknowledge(self, alert_id: str, actor_id: str) -> Alert:
        """Legal from active or escalated; cancels the escalation timer."""
        if not actor_id:
            raise ValidationError("actor_id is required", field="actor_id")

        async with self._lock_for(alert_id):
            alert = await self._require_open(alert_id, "acknowledge")
            if not can_transition(alert.status, AlertStatus.ACKNOWLEDGED):
                raise InvalidStateError(alert_id, alert.status.value, "acknowledge")

            now = self._clock.now()
            updated = replace(
                alert,
                status=AlertStatus.ACKNOWLEDGED,
                acknowledged_by=alert.acknowledged_by or actor_id,
                acknowledged_at=alert.acknowledged_at or now,
            )
            await self._append(LedgerAction.ACKNOWLEDGE, updated, actor_id, now)
            self._scheduler.cancel(alert_id)
            self._store.put(updated)

        logger.info(
            "Alert %s acknowledged by %s after %.1f min",
            alert_id, actor_id,
            (updated.acknowledged_at - alert.created_at).total_seconds() / 60,
            extra={
                "alert_id": alert_id,
                "action": LedgerAction.ACKNOWLEDGE.value,
                "actor_id": actor_id,
            },
        )
        return updated

    async def resolve(self, alert_id: str, actor_id: str, resolution: str = "") -> Alert:
        """Legal from any non-resolved status; drops the alert from the store."""
        if not actor_id:
            raise ValidationError("actor_id is required", field="actor_id")

        async with self._lock_for(alert_id):
            alert = await self._require_open(alert_id, "resolve")
            now = self._clock.now()
            updated = replace(
                alert,
                status=AlertStatus.RESOLVED,
                resolved_by=actor_id,
                resolved_at=now,
                resolution=resolution or None,
            )
            await self._append(LedgerAction.RESOLVE, updated, actor_id, now)
            self._scheduler.cancel(alert_id)
            self._store.remove(alert_id)
        # resolved is terminal; waiters still holding the old lock re-check the store
        self._locks.pop(alert_id, None)

        logger.info(
            "Alert %s resolved by %s", alert_id, actor_id,
            extra={
                "alert_id": alert_id,
                "action": LedgerAction.RESOLVE.value,
                "actor_id": actor_id,
            },
        )
        return updated

    async def escalate(self, alert_id: str) -> Alert:
        """
        Move an alert that is still active to escalated and notify the
        escalation contacts.

        Normally invoked by the escalation timer. The status is re-read from
        the store under the alert's lock, so a timer that lost the race to
        an acknowledge raises InvalidStateError instead of escalating.
        """
        async with self._lock_for(alert_id):
            alert = await self._require_open(alert_id, "escalate")
            if alert.status is not AlertStatus.ACTIVE:
                raise InvalidStateError(alert_id, alert.status.value, "escalate")

            now = self._clock.now()
            updated = replace(alert, status=AlertStatus.ESCALATED, escalated_at=now)
            await self._append(LedgerAction.ESCALATE, updated, None, now)
            self._scheduler.cancel(alert_id)
            self._store.put(updated)

        rule = self.rule_for(updated)
        self._spawn_fanout(updated, escalation=True, rule=rule)
        logger.warning(
            "Alert %s escalated: unacknowledged after %.0f min (rule=%s)",
            alert_id, (now - alert.created_at).total_seconds() / 60,
            rule.id if rule else None,
            extra={
                "alert_id": alert_id,
                "severity": alert.severity.value,
                "action": LedgerAction.ESCALATE.value,
            },
        )
        return updated

    async def _on_timer(self, alert_id: str) -> None:
        try:
            await self.escalate(alert_id)
        except (InvalidStateError, NotFoundError) as exc:
            logger.info(
                "Escalation timer for %s found nothing to escalate: %s",
                alert_id, exc.message,
                extra={"alert_id": alert_id},
            )
        except PersistenceError as exc:
            logger.error(
                "Escalation of %s not recorded, retrying in %.0fs: %s",
                alert_id, self._retry_seconds, exc.message,
                extra={"alert_id": alert_id},
            )
            async with self._lock_for(alert_id):
                alert = self._store.get(alert_id)
                if (
                    alert is not None
                    and alert.status is AlertStatus.ACTIVE
                    and not self._scheduler.is_armed(alert_id)
                ):
                    self._scheduler.arm(alert_id, self._retry_seconds, self._on_timer)

    # ── Queries ───────────────────────────────────────────────────────────

    async def get(self, alert_id: str) -> Alert:
        """Current state of any alert, resolved ones included."""
        alert = self._store.get(alert_id)
        if alert is not None:
            return alert
        past = (await self._history(alert_id)).get(alert_id)
        if past is None:
            raise NotFoundError("EmergencyAlert", id=alert_id)
        return past

    def active_alerts(self) -> List[Alert]:
        return self._store.list()

    async def all_alerts(self) -> List[Alert]:
        alerts = await self._history()
        return sorted(alerts.values(), key=lambda a: a.created_at, reverse=True)

    async def statistics(self, window: Optional[timedelta] = None) -> AlertStatistics:
        """
        Dashboard counters over the replayed ledger.

        avg_response_time is the mean create→acknowledge latency in minutes
        over alerts that were acknowledged; success_rate is the share of
        recipients reached by the initial fan-outs, in percent.
        """
        window = window or STATISTICS_WINDOW
        alerts = list((await self._history()).values())
        since = self._clock.now() - window

        stats = AlertStatistics(
            active_alerts=len(self._store),
            total_alerts=len(alerts),
        )
        latencies: List[float] = []
        for alert in alerts:
            stats.severity_breakdown[alert.severity.value] += 1
            if alert.created_at >= since:
                stats.recent_alerts += 1
            if alert.escalated_at is not None:
                stats.escalated_alerts += 1
            if alert.acknowledged_at is not None:
                latencies.append(
                    (alert.acknowledged_at - alert.created_at).total_seconds() / 60
                )
        if latencies:
            stats.avg_response_time = round(sum(latencies) / len(latencies), 1)

        reports = list(self._reports.values())
        stats.total_recipients = sum(r.total_recipients for r in reports)
        reached = sum(r.recipients_reached for r in reports)
        if stats.total_recipients:
            stats.success_rate = round(reached / stats.total_recipients * 100, 1)
        return stats

    def list_channels(self) -> List[ChannelConfig]:
        return sorted(self._channel_configs, key=lambda c: c.priority)

    def list_escalation_rules(self) -> List[EscalationRule]:
        return list(self._rules)

    def rule_for(self, alert: Alert) -> Optional[EscalationRule]:
        return match_rule(alert, self._rules)

    def has_timer(self, alert_id: str) -> bool:
        return self._scheduler.is_armed(alert_id)

    def escalation_deadline(self, alert_id: str) -> Optional[datetime]:
        return self._scheduler.deadline(alert_id)

    def delivery_report(
        self,
        alert_id: str,
        *,
        escalation: bool = False,
    ) -> Optional[DispatchReport]:
        """Latest fan-out report for an alert, if its fan-out has finished."""
        reports = self._escalation_reports if escalation else self._reports
        return reports.get(alert_id)

    # ── Self-test ─────────────────────────────────────────────────────────

    async def run_system_test(self, actor_id: str = "system") -> Dict[str, Any]:
        """Create a low-severity email alert to the test address, then resolve it."""
        try:
            alert = await self.create(
                title="System Test Alert",
                description="This is a test of the emergency alert system",
                severity=Severity.LOW,
                category="other",
                parish=settings.SYSTEM_TEST_PARISH,
                polling_station="Test Station",
                channels=[Channel.EMAIL],
                recipients=[settings.SYSTEM_TEST_RECIPIENT],
                created_by=actor_id,
            )
            await self.resolve(alert.id, actor_id, "System test completed successfully")
        except EmergencyPlatformError as exc:
            logger.error("Emergency system test failed: %s", exc.message)
            return {"success": False, "message": f"System test failed: {exc.message}"}

        return {
            "success": True,
            "message": "Emergency alert system test completed successfully",
            "alert_id": alert.id,
        }

    # ── Shutdown ──────────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait until fired timers and every background fan-out have finished."""
        while True:
            await self._scheduler.drain()
            pending = list(self._fanouts)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        await self._scheduler.shutdown()
        pending = list(self._fanouts)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(
            "Emergency engine stopped (%d open alerts, %d fan-outs cancelled)",
            len(self._store), len(pending),
        )
