"""
store.py — In-memory index of open alerts, rebuilt from the ledger.

═══════════════════════════════════════════════════════════════════════════
REPLAY
═══════════════════════════════════════════════════════════════════════════

    ledger records for id X, sorted by (timestamp, action rank, sequence)
        │
        ├── first readable `create` record → initial Alert
        ├── later `create` duplicates      → ignored
        ├── acknowledge / escalate / resolve
        │       status  ← status of the action
        │       *_by / *_at taken from the record, only if still unset
        └── anything after `resolved`      → ignored (terminal)

The latest record therefore decides the status, set-once fields are never
overwritten, and a record that cannot be read is skipped with a warning
instead of aborting the whole rebuild. Transitions are applied from the
record envelope (action, actor, timestamp), so a transition whose snapshot
is truncated still replays.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from backend.app.emergency.ledger import ALERT_ENTITY, Ledger, LedgerRecord
from backend.app.emergency.models import (
    ACTION_STATUS,
    Alert,
    AlertStatus,
    LedgerAction,
    can_transition,
)

logger = logging.getLogger(__name__)

# Tie-break for records sharing a timestamp
_ACTION_RANK = {
    LedgerAction.CREATE.value: 0,
    LedgerAction.ESCALATE.value: 1,
    LedgerAction.ACKNOWLEDGE.value: 2,
    LedgerAction.RESOLVE.value: 3,
}


def _apply_transition(state: Alert, record: LedgerRecord) -> Alert:
    action = LedgerAction(record.action)
    target = ACTION_STATUS[action]
    if state.status is target:
        return state  # duplicate record
    if not can_transition(state.status, target):
        logger.warning(
            "Ignoring %s record for alert %s in status %s",
            action.value, state.id, state.status.value,
            extra={"alert_id": state.id, "action": action.value},
        )
        return state

    changes = {"status": target}
    if action is LedgerAction.ACKNOWLEDGE and state.acknowledged_at is None:
        changes["acknowledged_by"] = record.actor_id
        changes["acknowledged_at"] = record.timestamp
    elif action is LedgerAction.ESCALATE and state.escalated_at is None:
        changes["escalated_at"] = record.timestamp
    elif action is LedgerAction.RESOLVE and state.resolved_at is None:
        changes["resolved_by"] = record.actor_id
        changes["resolved_at"] = record.timestamp
        if isinstance(record.snapshot, dict):
            changes["resolution"] = record.snapshot.get("resolution")
    return replace(state, **changes)


def replay(records: Iterable[LedgerRecord]) -> Dict[str, Alert]:
    """Fold ledger records into the current state of every alert."""
    history: Dict[str, List[LedgerRecord]] = defaultdict(list)
    for record in records:
        if record.action not in _ACTION_RANK:
            logger.warning(
                "Skipping ledger record %s with unknown action %r",
                record.sequence, record.action,
            )
            continue
        history[record.entity_id].append(record)

    alerts: Dict[str, Alert] = {}
    for alert_id, entries in history.items():
        entries.sort(key=lambda r: (r.timestamp, _ACTION_RANK[r.action], r.sequence))
        state: Optional[Alert] = None
        for record in entries:
            if record.action == LedgerAction.CREATE.value:
                if state is not None:
                    continue
                try:
                    state = replace(Alert.from_dict(record.snapshot), status=AlertStatus.ACTIVE)
                except (KeyError, TypeError, ValueError, AttributeError) as exc:
                    logger.warning(
                        "Skipping malformed create record %s for alert %s: %s",
                        record.sequence, alert_id, exc,
                        extra={"alert_id": alert_id},
                    )
                continue
            if state is None:
                logger.warning(
                    "Skipping %s record %s for alert %s with no readable creation",
                    record.action, record.sequence, alert_id,
                    extra={"alert_id": alert_id},
                )
                continue
            state = _apply_transition(state, record)
        if state is not None:
            alerts[alert_id] = state
    return alerts


class AlertStore:
    """
    Alerts currently active, acknowledged or escalated.

    put()/remove() are only called by the engine while it holds the
    alert's lock; readers get the frozen Alert instances directly.
    """

    def __init__(self, ledger: Ledger):
        self._ledger = ledger
        self._alerts: Dict[str, Alert] = {}

    def __len__(self) -> int:
        return len(self._alerts)

    def __contains__(self, alert_id: object) -> bool:
        return alert_id in self._alerts

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def list(self) -> List[Alert]:
        return sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)

    def put(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert

    def remove(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.pop(alert_id, None)

    async def history(self) -> Dict[str, Alert]:
        """Replay the full ledger, resolved alerts included."""
        records = await self._ledger.query(entity_type=ALERT_ENTITY)
        return replay(records)

    async def rebuild(self) -> List[Alert]:
        """
        Replace the index with the replayed open alerts.

        Returns the retained alerts; the engine re-arms timers for the
        active ones using their original deadlines.
        """
        alerts = await self.history()
        self._alerts = {
            alert_id: alert for alert_id, alert in alerts.items() if alert.is_open
        }
        logger.info(
            "Alert store rebuilt: %d open of %d alerts in ledger",
            len(self._alerts), len(alerts),
        )
        return self.list()
