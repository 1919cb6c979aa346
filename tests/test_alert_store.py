"""
test_alert_store.py — Tests for ledger replay and the open-alert index.

Covers:
    • Replay ordering (timestamp order, same-timestamp tie-break)
    • Set-once fields and duplicate records
    • Illegal and orphaned transitions
    • Malformed records skipped without aborting the rebuild
    • AlertStore rebuild / accessors

Run with:
    pytest tests/test_alert_store.py -v
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.emergency.ledger import ALERT_ENTITY, InMemoryLedger, LedgerRecord
from backend.app.emergency.models import (
    Alert,
    AlertStatus,
    Channel,
    LedgerAction,
    Location,
    Severity,
)
from backend.app.emergency.store import AlertStore, replay


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

T0 = datetime(2025, 9, 3, 8, 0, tzinfo=timezone.utc)


def _make_alert(
    alert_id: str = "alert_000000000001",
    severity: Severity = Severity.HIGH,
    created_at: datetime = T0,
    parish: str = "St. Andrew",
) -> Alert:
    return Alert(
        id=alert_id,
        title="Polling station closed early",
        description="Presiding officer locked the doors at 3pm.",
        category="other",
        severity=severity,
        location=Location(parish=parish, polling_station="Half Way Tree Primary"),
        created_by="observer-17",
        created_at=created_at,
        channels=(Channel.SMS, Channel.EMAIL),
    )


def _record(
    action: LedgerAction,
    alert_id: str = "alert_000000000001",
    *,
    minutes: float = 0,
    actor: str = "coordinator-2",
    snapshot=None,
    sequence: int = 0,
) -> LedgerRecord:
    return LedgerRecord(
        action=action.value,
        entity_type=ALERT_ENTITY,
        entity_id=alert_id,
        actor_id=None if action is LedgerAction.ESCALATE else actor,
        timestamp=T0 + timedelta(minutes=minutes),
        snapshot=snapshot if snapshot is not None else {},
        sequence=sequence,
    )


def _create(alert_id: str = "alert_000000000001", **kwargs) -> LedgerRecord:
    alert = _make_alert(alert_id, **kwargs)
    return LedgerRecord(
        action=LedgerAction.CREATE.value,
        entity_type=ALERT_ENTITY,
        entity_id=alert_id,
        actor_id=alert.created_by,
        timestamp=alert.created_at,
        snapshot=alert.to_dict(),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Replay
# ═══════════════════════════════════════════════════════════════════════════

class TestReplayLifecycle:
    """Full lifecycles folded from records."""

    def test_create_only_is_active(self):
        alerts = replay([_create()])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.ACTIVE
        assert alert.severity is Severity.HIGH
        assert alert.channels == (Channel.SMS, Channel.EMAIL)

    def test_create_acknowledge_resolve(self):
        alerts = replay([
            _create(),
            _record(LedgerAction.ACKNOWLEDGE, minutes=4, actor="coord-1"),
            _record(
                LedgerAction.RESOLVE, minutes=20, actor="coord-2",
                snapshot={"resolution": "Doors reopened"},
            ),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.RESOLVED
        assert alert.acknowledged_by == "coord-1"
        assert alert.acknowledged_at == T0 + timedelta(minutes=4)
        assert alert.resolved_by == "coord-2"
        assert alert.resolved_at == T0 + timedelta(minutes=20)
        assert alert.resolution == "Doors reopened"

    def test_escalated_then_acknowledged(self):
        alerts = replay([
            _create(),
            _record(LedgerAction.ESCALATE, minutes=15),
            _record(LedgerAction.ACKNOWLEDGE, minutes=17),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.ACKNOWLEDGED
        assert alert.escalated_at == T0 + timedelta(minutes=15)
        assert alert.acknowledged_at == T0 + timedelta(minutes=17)

    def test_records_are_applied_in_timestamp_order(self):
        alerts = replay([
            _record(LedgerAction.RESOLVE, minutes=30),
            _record(LedgerAction.ACKNOWLEDGE, minutes=5),
            _create(),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.RESOLVED
        assert alert.acknowledged_at == T0 + timedelta(minutes=5)

    def test_same_timestamp_create_sorts_first(self):
        alerts = replay([
            _record(LedgerAction.RESOLVE, minutes=0),
            _create(),
        ])
        assert alerts["alert_000000000001"].status is AlertStatus.RESOLVED

    def test_snapshot_status_on_create_is_ignored(self):
        record = _create()
        record.snapshot["status"] = "resolved"
        alerts = replay([record])
        assert alerts["alert_000000000001"].status is AlertStatus.ACTIVE

    def test_alerts_are_independent(self):
        alerts = replay([
            _create("alert_a"),
            _create("alert_b"),
            _record(LedgerAction.RESOLVE, "alert_a", minutes=1),
        ])
        assert alerts["alert_a"].status is AlertStatus.RESOLVED
        assert alerts["alert_b"].status is AlertStatus.ACTIVE


class TestReplayTolerance:
    """Duplicate, illegal and malformed records."""

    def test_duplicate_acknowledge_keeps_first_timestamp(self):
        alerts = replay([
            _create(),
            _record(LedgerAction.ACKNOWLEDGE, minutes=3, actor="first"),
            _record(LedgerAction.ACKNOWLEDGE, minutes=8, actor="second"),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.acknowledged_by == "first"
        assert alert.acknowledged_at == T0 + timedelta(minutes=3)

    def test_duplicate_create_ignored(self):
        later = _create()
        later.snapshot["title"] = "rewritten"
        alerts = replay([_create(), later])
        assert alerts["alert_000000000001"].title == "Polling station closed early"

    def test_nothing_applies_after_resolve(self):
        alerts = replay([
            _create(),
            _record(LedgerAction.RESOLVE, minutes=10),
            _record(LedgerAction.ACKNOWLEDGE, minutes=12),
            _record(LedgerAction.ESCALATE, minutes=15),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.RESOLVED
        assert alert.acknowledged_at is None
        assert alert.escalated_at is None

    def test_escalate_after_acknowledge_ignored(self, caplog):
        with caplog.at_level(logging.WARNING):
            alerts = replay([
                _create(),
                _record(LedgerAction.ACKNOWLEDGE, minutes=2),
                _record(LedgerAction.ESCALATE, minutes=15),
            ])
        assert alerts["alert_000000000001"].status is AlertStatus.ACKNOWLEDGED
        assert "Ignoring escalate record" in caplog.text

    def test_malformed_create_skipped(self, caplog):
        broken = LedgerRecord(
            action=LedgerAction.CREATE.value,
            entity_type=ALERT_ENTITY,
            entity_id="alert_broken",
            actor_id="observer-3",
            timestamp=T0,
            snapshot={"id": "alert_broken", "severity": "apocalyptic"},
        )
        with caplog.at_level(logging.WARNING):
            alerts = replay([broken, _create("alert_ok")])
        assert "alert_broken" not in alerts
        assert alerts["alert_ok"].status is AlertStatus.ACTIVE
        assert "Skipping malformed create record" in caplog.text

    def test_non_dict_snapshot_skipped(self):
        broken = LedgerRecord(
            action=LedgerAction.CREATE.value,
            entity_type=ALERT_ENTITY,
            entity_id="alert_broken",
            actor_id=None,
            timestamp=T0,
            snapshot="not json at all",
        )
        assert replay([broken]) == {}

    def test_transition_without_create_skipped(self, caplog):
        with caplog.at_level(logging.WARNING):
            alerts = replay([_record(LedgerAction.ACKNOWLEDGE, "alert_orphan")])
        assert alerts == {}
        assert "no readable creation" in caplog.text

    def test_unknown_action_skipped(self):
        odd = LedgerRecord(
            action="emergency_alert_archived",
            entity_type=ALERT_ENTITY,
            entity_id="alert_000000000001",
            actor_id=None,
            timestamp=T0 + timedelta(minutes=1),
        )
        alerts = replay([_create(), odd])
        assert alerts["alert_000000000001"].status is AlertStatus.ACTIVE

    def test_resolve_with_truncated_snapshot_still_applies(self):
        alerts = replay([
            _create(),
            _record(LedgerAction.RESOLVE, minutes=5, snapshot=["truncated"]),
        ])
        alert = alerts["alert_000000000001"]
        assert alert.status is AlertStatus.RESOLVED
        assert alert.resolution is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: AlertStore
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertStore:
    """Index accessors and rebuild."""

    def test_put_get_remove(self):
        store = AlertStore(InMemoryLedger())
        alert = _make_alert()
        store.put(alert)
        assert alert.id in store
        assert store.get(alert.id) is alert
        assert len(store) == 1
        assert store.remove(alert.id) is alert
        assert store.get(alert.id) is None
        assert store.remove(alert.id) is None

    def test_list_newest_first(self):
        store = AlertStore(InMemoryLedger())
        store.put(_make_alert("alert_old", created_at=T0))
        store.put(_make_alert("alert_new", created_at=T0 + timedelta(minutes=9)))
        assert [a.id for a in store.list()] == ["alert_new", "alert_old"]

    @pytest.mark.asyncio
    async def test_rebuild_keeps_only_open_alerts(self):
        ledger = InMemoryLedger()
        for record in [
            _create("alert_active"),
            _create("alert_acked"),
            _create("alert_done"),
            _record(LedgerAction.ACKNOWLEDGE, "alert_acked", minutes=2),
            _record(LedgerAction.ACKNOWLEDGE, "alert_done", minutes=2),
            _record(LedgerAction.RESOLVE, "alert_done", minutes=6),
        ]:
            await ledger.append(record)

        store = AlertStore(ledger)
        retained = await store.rebuild()

        assert {a.id for a in retained} == {"alert_active", "alert_acked"}
        assert "alert_done" not in store
        assert store.get("alert_acked").status is AlertStatus.ACKNOWLEDGED

        history = await store.history()
        assert history["alert_done"].status is AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_rebuild_replaces_previous_contents(self):
        store = AlertStore(InMemoryLedger())
        store.put(_make_alert("alert_stale"))
        assert await store.rebuild() == []
        assert len(store) == 0
