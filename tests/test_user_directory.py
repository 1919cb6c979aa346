"""
test_user_directory.py — Tests for the SQL-backed user directory.

Covers:
    • Role lookup is case-insensitive and skips suspended accounts
    • Parish lookup joins the parishes table by name
    • get_user by numeric id or username
    • PersistenceError when the users table is missing
    • Dynamic fan-out resolved from the users table

Run with:
    pytest tests/test_user_directory.py -v
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from backend.app.core.database import create_engine, create_session_factory, init_db
from backend.app.core.errors import PersistenceError
from backend.app.emergency.clock import VirtualClock
from backend.app.emergency.directory import ParishRow, SqlUserDirectory, UserRow
from backend.app.emergency.dispatcher import NotificationDispatcher
from backend.app.emergency.models import Alert, Channel, DeliveryResult, Location, Severity
from backend.app.emergency.policy import RetryConfig, build_channel_configs


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

T0 = datetime(2025, 9, 3, 8, 0, tzinfo=timezone.utc)


def _sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'users.db'}"


async def _seeded_directory(tmp_path) -> SqlUserDirectory:
    db = create_engine(_sqlite_url(tmp_path))
    await init_db(db)
    async with create_session_factory(db)() as session:
        session.add_all([
            ParishRow(id=1, name="Kingston", code="KIN"),
            ParishRow(id=2, name="St. James", code="JAM"),
        ])
        session.add_all([
            UserRow(
                id=1, username="acampbell", first_name="Ann", last_name="Campbell",
                email="ann@observer.org", phone="+18765550101", parish_id=1,
                role="Coordinator", status="active",
            ),
            UserRow(
                id=2, username="bbrown", first_name="Bob", last_name="Brown",
                email="bob@observer.org", phone="+18765550102", parish_id=2,
                role="admin", status="active", whatsapp_enabled=True,
            ),
            UserRow(
                id=3, username="cclarke", first_name="Cat", last_name="Clarke",
                email="cat@observer.org", phone="+18765550103", parish_id=1,
                role="Observer", status="active",
            ),
            UserRow(
                id=4, username="dgrant", first_name="Dan", last_name="Grant",
                email="dan@observer.org", phone="+18765550104", parish_id=1,
                role="coordinator", status="suspended",
            ),
            UserRow(
                id=5, username="ewilliams", email="eve@observer.org",
                role="supervisor", status="active",
                push_notification_token="tok-eve",
            ),
        ])
        await session.commit()
    return SqlUserDirectory(db)


class _NullNotifier:
    async def send_channel(self, channel, recipient, alert, *, escalation=False):
        return DeliveryResult(delivered=True)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Lookups
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlUserDirectory:
    """Test the users / parishes adapter over SQLite."""

    @pytest.mark.asyncio
    async def test_users_by_role_ignores_case_and_suspended(self, tmp_path):
        directory = await _seeded_directory(tmp_path)
        try:
            [ann] = await directory.users_by_role("coordinator")
            assert ann.recipient_id == "1"
            assert ann.user_id == "1"
            assert ann.name == "Ann Campbell"
            assert ann.role == "Coordinator"
            assert ann.parish == "Kingston"
            assert ann.email == "ann@observer.org"
            assert ann.phone == "+18765550101"
            assert ann.sms_enabled is True
            assert ann.whatsapp_enabled is False

            assert [u.recipient_id for u in await directory.users_by_role("OBSERVER")] == ["3"]
            assert await directory.users_by_role("auditor") == []
        finally:
            await directory.close()

    @pytest.mark.asyncio
    async def test_users_by_parish_joins_on_name(self, tmp_path):
        directory = await _seeded_directory(tmp_path)
        try:
            kingston = await directory.users_by_parish(" kingston ")
            assert [u.recipient_id for u in kingston] == ["1", "3"]

            [bob] = await directory.users_by_parish("St. James")
            assert bob.name == "Bob Brown"
            assert bob.whatsapp_enabled is True
        finally:
            await directory.close()

    @pytest.mark.asyncio
    async def test_get_user_by_id_or_username(self, tmp_path):
        directory = await _seeded_directory(tmp_path)
        try:
            by_id = await directory.get_user("2")
            by_name = await directory.get_user("bbrown")
            assert by_id is not None and by_name is not None
            assert by_id.recipient_id == by_name.recipient_id == "2"

            assert await directory.get_user("4") is None  # suspended
            assert await directory.get_user("nobody") is None
        finally:
            await directory.close()

    @pytest.mark.asyncio
    async def test_user_without_name_or_parish(self, tmp_path):
        directory = await _seeded_directory(tmp_path)
        try:
            eve = await directory.get_user("ewilliams")
            assert eve is not None
            assert eve.name == "ewilliams"
            assert eve.parish is None
            assert eve.push_token == "tok-eve"
        finally:
            await directory.close()

    @pytest.mark.asyncio
    async def test_missing_table_raises_persistence_error(self, tmp_path):
        directory = SqlUserDirectory(create_engine(_sqlite_url(tmp_path)))
        try:
            with pytest.raises(PersistenceError):
                await directory.users_by_role("coordinator")
            with pytest.raises(PersistenceError):
                await directory.get_user("1")
        finally:
            await directory.close()


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Dispatcher over the SQL directory
# ═══════════════════════════════════════════════════════════════════════════

class TestDynamicFanOutFromUsersTable:

    @pytest.mark.asyncio
    async def test_roles_and_parish_narrowing(self, tmp_path):
        directory = await _seeded_directory(tmp_path)
        dispatcher = NotificationDispatcher(
            _NullNotifier(),
            directory,
            clock=VirtualClock(T0),
            channel_configs=build_channel_configs(disabled=[]),
            notify_roles=["admin", "coordinator", "supervisor"],
            parish_scoped_channels=["sms"],
            escalation_contacts=[],
            escalation_channels=["email"],
            retry=RetryConfig(max_retries=0, backoff_base_seconds=0.0),
        )
        alert = Alert(
            id="alert_0123456789ab",
            title="Ballot box missing",
            description="Box 3 not delivered.",
            category="other",
            severity=Severity.HIGH,
            location=Location(parish="Kingston", polling_station="Central Branch"),
            created_by="observer-9",
            created_at=T0,
            channels=(Channel.SMS, Channel.EMAIL),
        )
        try:
            resolved = await dispatcher.resolve_recipients(alert)
            assert sorted(r.recipient_id for r in resolved[Channel.EMAIL]) == ["1", "2", "5"]
            assert [r.recipient_id for r in resolved[Channel.SMS]] == ["1"]

            # usernames in an explicit list resolve through the same table
            explicit = replace(alert, recipients=("bbrown",))
            resolved = await dispatcher.resolve_recipients(explicit)
            assert [r.email for r in resolved[Channel.EMAIL]] == ["bob@observer.org"]
        finally:
            await directory.close()
