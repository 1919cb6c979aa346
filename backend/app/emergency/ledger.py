"""
ledger.py — Append-only event log, the engine's only persistence.

Every alert transition is exactly one appended record:

    action       create | acknowledge | resolve | escalate
    entity_type  "emergency_alert"
    entity_id    alert id
    actor_id     user who triggered it (None for timer-fired escalate)
    timestamp    transition time
    snapshot     post-transition alert state (Alert.to_dict())

Two adapters:
    InMemoryLedger — list-backed; development and tests
    SqlLedger      — async SQLAlchemy over the platform's audit_logs table

Both return records ascending by (timestamp, sequence). Neither ever
updates or deletes a row.
"""

from __future__ import annotations

import copy
import itertools
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import JSON, DateTime, Integer, String, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base, close_db, create_session_factory, init_db
from backend.app.core.errors import PersistenceError

logger = logging.getLogger(__name__)

ALERT_ENTITY = "emergency_alert"


@dataclass(frozen=True)
class LedgerRecord:
    action: str
    entity_type: str
    entity_id: str
    actor_id: Optional[str]
    timestamp: datetime
    snapshot: Any = field(default_factory=dict)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "snapshot": self.snapshot,
        }


class Ledger(Protocol):
    async def append(self, record: LedgerRecord) -> LedgerRecord: ...

    async def query(
        self,
        *,
        entity_type: str,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[LedgerRecord]: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-Memory Ledger
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryLedger:
    """List-backed ledger. Snapshots are deep-copied in and out."""

    def __init__(self) -> None:
        self._records: List[LedgerRecord] = []
        self._seq = itertools.count(1)

    def __len__(self) -> int:
        return len(self._records)

    async def append(self, record: LedgerRecord) -> LedgerRecord:
        stored = replace(
            record,
            sequence=next(self._seq),
            snapshot=copy.deepcopy(record.snapshot),
        )
        self._records.append(stored)
        return stored

    async def query(
        self,
        *,
        entity_type: str,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[LedgerRecord]:
        matched = [
            replace(r, snapshot=copy.deepcopy(r.snapshot))
            for r in self._records
            if r.entity_type == entity_type
            and (action is None or r.action == action)
            and (entity_id is None or r.entity_id == entity_id)
        ]
        return sorted(matched, key=lambda r: (r.timestamp, r.sequence))


# ═══════════════════════════════════════════════════════════════════════════
# SQL Ledger
# ═══════════════════════════════════════════════════════════════════════════

class AuditLog(Base):
    """Row of the audit_logs table shared with the rest of the platform."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    entity_type: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    new_values: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _row_to_record(row: AuditLog) -> LedgerRecord:
    snapshot = row.new_values
    if isinstance(snapshot, str):
        # Older rows stored the snapshot as a JSON-encoded string
        try:
            snapshot = json.loads(snapshot)
        except ValueError:
            logger.warning("Audit log %s has undecodable new_values", row.id)
            snapshot = {}
    return LedgerRecord(
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id or "",
        actor_id=row.user_id,
        timestamp=_as_utc(row.created_at),
        snapshot=snapshot if snapshot is not None else {},
        sequence=row.id,
    )


class SqlLedger:
    """
    Ledger backed by the audit_logs table.

    Usage:
        ledger = SqlLedger(create_engine("sqlite+aiosqlite:///ledger.db"))
        await ledger.initialise()
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._sessions = create_session_factory(engine)

    async def initialise(self) -> None:
        try:
            await init_db(self._engine)
        except SQLAlchemyError as exc:
            raise PersistenceError("initialise", str(exc)) from exc

    async def close(self) -> None:
        await close_db(self._engine)

    async def append(self, record: LedgerRecord) -> LedgerRecord:
        row = AuditLog(
            user_id=record.actor_id,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            new_values=record.snapshot,
            created_at=record.timestamp,
        )
        try:
            async with self._sessions() as session:
                session.add(row)
                await session.commit()
                return replace(record, sequence=row.id)
        except SQLAlchemyError as exc:
            logger.error(
                "Ledger append failed for %s %s: %s",
                record.action, record.entity_id, exc,
                extra={"alert_id": record.entity_id, "action": record.action},
            )
            raise PersistenceError("append", str(exc), entity_id=record.entity_id) from exc

    async def query(
        self,
        *,
        entity_type: str,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[LedgerRecord]:
        stmt = select(AuditLog).where(AuditLog.entity_type == entity_type)
        if action is not None:
            stmt = stmt.where(AuditLog.action == action)
        if entity_id is not None:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        stmt = stmt.order_by(AuditLog.created_at, AuditLog.id)
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("query", str(exc), entity_type=entity_type) from exc
        return [_row_to_record(row) for row in rows]
