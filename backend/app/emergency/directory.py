"""
directory.py — User lookups for recipient resolution.

The platform's user table is owned elsewhere; the engine only needs three
read operations. Role and parish comparisons are case-insensitive because
the user table stores roles as entered ("Observer", "coordinator", ...).

Two adapters:
    InMemoryUserDirectory — fixed list; development and tests
    SqlUserDirectory      — async SQLAlchemy over the users / parishes tables
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy import Boolean, ForeignKey, Integer, String, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base, close_db, create_session_factory
from backend.app.core.errors import PersistenceError
from backend.app.emergency.models import Recipient

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    async def users_by_role(self, role: str) -> List[Recipient]: ...

    async def users_by_parish(self, parish: str) -> List[Recipient]: ...

    async def get_user(self, user_id: str) -> Optional[Recipient]: ...


class InMemoryUserDirectory:
    """Directory over a fixed list of users, keyed by user_id."""

    def __init__(self, users: Iterable[Recipient] = ()):
        self._users: Dict[str, Recipient] = {}
        for user in users:
            self.add(user)

    def add(self, user: Recipient) -> None:
        key = user.user_id or user.recipient_id
        self._users[key] = user

    def __len__(self) -> int:
        return len(self._users)

    async def users_by_role(self, role: str) -> List[Recipient]:
        wanted = role.lower()
        return [u for u in self._users.values() if (u.role or "").lower() == wanted]

    async def users_by_parish(self, parish: str) -> List[Recipient]:
        wanted = parish.strip().lower()
        return [
            u for u in self._users.values()
            if (u.parish or "").strip().lower() == wanted
        ]

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        return self._users.get(user_id)


# ═══════════════════════════════════════════════════════════════════════════
# SQL Directory
# ═══════════════════════════════════════════════════════════════════════════

class ParishRow(Base):
    __tablename__ = "parishes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64))
    code: Mapped[str] = mapped_column(String(16), unique=True)


class UserRow(Base):
    """The columns of the platform's users table that notification needs."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str] = mapped_column(String(64), default="")
    last_name: Mapped[str] = mapped_column(String(64), default="")
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    parish_id: Mapped[Optional[int]] = mapped_column(ForeignKey("parishes.id"), nullable=True)
    role: Mapped[str] = mapped_column(String(32), default="Observer", index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    push_notification_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    whatsapp_enabled: Mapped[bool] = mapped_column(Boolean, default=False)


def _row_to_recipient(user: UserRow, parish: Optional[str]) -> Recipient:
    name = f"{user.first_name or ''} {user.last_name or ''}".strip() or user.username
    return Recipient(
        recipient_id=str(user.id),
        name=name,
        user_id=str(user.id),
        role=user.role,
        parish=parish,
        phone=user.phone,
        email=user.email,
        push_token=user.push_notification_token,
        sms_enabled=bool(user.sms_enabled),
        whatsapp_enabled=bool(user.whatsapp_enabled),
    )


class SqlUserDirectory:
    """
    Directory backed by the users table, joined to parishes for the name.

    Suspended accounts are never notified. ``get_user`` accepts the numeric
    id or the username, since alerts may list either.

    Usage:
        directory = SqlUserDirectory(create_engine())
        users = await directory.users_by_role("coordinator")
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._sessions = create_session_factory(engine)

    async def close(self) -> None:
        await close_db(self._engine)

    def _select(self):
        return (
            select(UserRow, ParishRow.name)
            .outerjoin(ParishRow, UserRow.parish_id == ParishRow.id)
            .where(UserRow.status != "suspended")
            .order_by(UserRow.id)
        )

    async def _fetch(self, stmt, operation: str) -> List[Recipient]:
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            logger.error("User directory %s failed: %s", operation, exc)
            raise PersistenceError(f"directory {operation}", str(exc)) from exc
        return [_row_to_recipient(user, parish) for user, parish in rows]

    async def users_by_role(self, role: str) -> List[Recipient]:
        stmt = self._select().where(func.lower(UserRow.role) == role.lower())
        return await self._fetch(stmt, "users_by_role")

    async def users_by_parish(self, parish: str) -> List[Recipient]:
        stmt = self._select().where(
            func.lower(func.trim(ParishRow.name)) == parish.strip().lower()
        )
        return await self._fetch(stmt, "users_by_parish")

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        key = user_id.strip()
        if key.isdigit():
            stmt = self._select().where(UserRow.id == int(key))
        else:
            stmt = self._select().where(UserRow.username == key)
        found = await self._fetch(stmt, "get_user")
        return found[0] if found else None
