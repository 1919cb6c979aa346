"""
test_emergency_api.py — HTTP-level tests for the emergency alert endpoints.

Covers:
    • Create / acknowledge / resolve round trip over HTTP
    • Error envelope (422 / 404 / 409)
    • History, single alert, delivery report and statistics views
    • Channel and escalation-rule listings
    • System self-test and health probes

Run with:
    pytest tests/test_emergency_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.app.emergency.clock import SystemClock
from backend.app.emergency.directory import InMemoryUserDirectory
from backend.app.emergency.dispatcher import NotificationDispatcher
from backend.app.emergency.engine import EmergencyAlertEngine
from backend.app.emergency.ledger import InMemoryLedger
from backend.app.emergency.models import DeliveryResult
from backend.app.emergency.policy import RetryConfig, build_channel_configs
from backend.app.main import create_app


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

BASE = "/api/v1/emergency"


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def send_channel(self, channel, recipient, alert, *, escalation=False):
        self.calls.append((recipient.recipient_id, channel.value))
        return DeliveryResult(delivered=True, provider_response={"id": "sim-1"})


def _make_engine(ledger=None):
    clock = SystemClock()
    configs = build_channel_configs(disabled=[])
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(
        notifier,
        InMemoryUserDirectory(),
        clock=clock,
        channel_configs=configs,
        escalation_contacts=["supervisor@example.com"],
        retry=RetryConfig(max_retries=0, backoff_base_seconds=0.0),
    )
    engine = EmergencyAlertEngine(
        ledger if ledger is not None else InMemoryLedger(), dispatcher,
        clock=clock, channel_configs=configs,
        escalation_delays={"critical": 5, "high": 15, "medium": 30, "low": 60},
    )
    return engine, notifier


@pytest.fixture
def wired():
    engine, notifier = _make_engine()
    with TestClient(create_app(engine)) as client:
        yield client, engine, notifier


@pytest.fixture
def client(wired):
    return wired[0]


def _payload(**overrides):
    body = {
        "title": "Ballot box tampering",
        "description": "Two men forced entry to the counting room.",
        "severity": "critical",
        "category": "security_threat",
        "location": {
            "parish": "Kingston",
            "polling_station": "St. Andrew Primary",
            "coordinates": {"lat": 17.997, "lng": -76.7936},
        },
        "channels": ["email"],
        "recipients": ["coordinator@example.com"],
        "created_by": "observer-17",
    }
    body.update(overrides)
    return body


def _create(client, **overrides):
    response = client.post(f"{BASE}/alerts", json=_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycleEndpoints:
    """Create, acknowledge and resolve over HTTP."""

    def test_create_returns_active_alert(self, client):
        alert = _create(client)
        assert alert["id"].startswith("alert_")
        assert alert["status"] == "active"
        assert alert["severity"] == "critical"
        assert alert["location"]["parish"] == "Kingston"
        assert alert["channels"] == ["email"]

    def test_new_alert_has_escalation_deadline(self, client):
        alert = _create(client)
        fetched = client.get(f"{BASE}/alerts/{alert['id']}").json()
        assert fetched["escalation_deadline"] is not None

    def test_acknowledge_then_resolve(self, client):
        alert = _create(client)

        acked = client.post(
            f"{BASE}/alerts/{alert['id']}/acknowledge",
            json={"actor_id": "coordinator-2"},
        )
        assert acked.status_code == 200
        assert acked.json()["status"] == "acknowledged"
        assert acked.json()["acknowledged_by"] == "coordinator-2"

        resolved = client.post(
            f"{BASE}/alerts/{alert['id']}/resolve",
            json={"actor_id": "coordinator-2", "resolution": "Police secured the station."},
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolution"] == "Police secured the station."

        fetched = client.get(f"{BASE}/alerts/{alert['id']}").json()
        assert fetched["status"] == "resolved"
        assert fetched["escalation_deadline"] is None

    def test_active_list_excludes_resolved(self, client):
        kept = _create(client, severity="high")
        gone = _create(client, severity="low")
        client.post(f"{BASE}/alerts/{gone['id']}/resolve", json={"actor_id": "c-1"})

        body = client.get(f"{BASE}/alerts/active").json()
        assert body["count"] == 1
        assert [a["id"] for a in body["alerts"]] == [kept["id"]]


class TestErrorEnvelope:
    """Domain errors map to status codes with the shared error body."""

    def test_missing_severity_is_422(self, client):
        response = client.post(f"{BASE}/alerts", json=_payload(severity=None))
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "severity"

    def test_malformed_body_uses_same_envelope(self, client):
        body = _payload()
        del body["title"]
        response = client.post(f"{BASE}/alerts", json=body)
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "title"

    def test_unknown_channel_is_422(self, client):
        response = client.post(f"{BASE}/alerts", json=_payload(channels=["pager"]))
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "channels"

    def test_double_acknowledge_is_409(self, client):
        alert = _create(client)
        url = f"{BASE}/alerts/{alert['id']}/acknowledge"
        assert client.post(url, json={"actor_id": "c-1"}).status_code == 200

        response = client.post(url, json={"actor_id": "c-2"})
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INVALID_STATE"
        assert error["details"]["current_status"] == "acknowledged"

    def test_acknowledge_resolved_is_409(self, client):
        alert = _create(client)
        client.post(f"{BASE}/alerts/{alert['id']}/resolve", json={"actor_id": "c-1"})
        response = client.post(
            f"{BASE}/alerts/{alert['id']}/acknowledge", json={"actor_id": "c-1"},
        )
        assert response.status_code == 409

    def test_ledger_failure_is_503_with_retry_after(self):
        class BrokenLedger(InMemoryLedger):
            async def append(self, record):
                raise RuntimeError("disk full")

        engine, _ = _make_engine(BrokenLedger())
        with TestClient(create_app(engine)) as client:
            response = client.post(f"{BASE}/alerts", json=_payload())
            assert response.status_code == 503
            assert response.json()["error"]["code"] == "PERSISTENCE_ERROR"
            assert response.headers["Retry-After"] == "30"
            assert client.get(f"{BASE}/alerts/active").json()["count"] == 0

    def test_unknown_alert_is_404(self, client):
        response = client.post(
            f"{BASE}/alerts/alert_doesnotexist/resolve", json={"actor_id": "c-1"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert client.get(f"{BASE}/alerts/alert_doesnotexist").status_code == 404
        assert client.get(f"{BASE}/alerts/alert_doesnotexist/delivery").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Views
# ═══════════════════════════════════════════════════════════════════════════

class TestViews:
    """History, delivery, statistics and configuration listings."""

    def test_history_filters(self, client):
        _create(client, severity="critical")
        low = _create(client, severity="low")
        client.post(f"{BASE}/alerts/{low['id']}/resolve", json={"actor_id": "c-1"})

        everything = client.get(f"{BASE}/alerts").json()
        assert everything["count"] == 2

        resolved = client.get(f"{BASE}/alerts", params={"status": "resolved"}).json()
        assert [a["id"] for a in resolved["alerts"]] == [low["id"]]

        critical = client.get(f"{BASE}/alerts", params={"severity": "CRITICAL"}).json()
        assert critical["count"] == 1

    def test_history_limit_caps_count_and_page(self, client):
        for _ in range(3):
            _create(client, severity="low")

        page = client.get(f"{BASE}/alerts", params={"limit": 2}).json()
        assert page["count"] == 2
        assert len(page["alerts"]) == 2

        rejected = client.get(f"{BASE}/alerts", params={"limit": 0})
        assert rejected.status_code == 422

    def test_delivery_report_after_fanout(self, wired):
        client, engine, notifier = wired
        alert = _create(client)
        client.portal.call(engine.drain)

        body = client.get(f"{BASE}/alerts/{alert['id']}/delivery").json()
        assert body["alert_id"] == alert["id"]
        assert body["initial"]["total_recipients"] == 1
        assert body["escalation"] is None
        assert ("coordinator@example.com", "email") in notifier.calls

    def test_statistics(self, wired):
        client, engine, _ = wired
        first = _create(client, severity="critical")
        _create(client, severity="medium")
        client.post(f"{BASE}/alerts/{first['id']}/acknowledge", json={"actor_id": "c-1"})
        client.portal.call(engine.drain)

        stats = client.get(f"{BASE}/statistics").json()
        assert stats["active_alerts"] == 2
        assert stats["total_alerts"] == 2
        assert stats["recent_alerts"] == 2
        assert stats["escalated_alerts"] == 0
        assert stats["severity_breakdown"]["critical"] == 1
        assert stats["severity_breakdown"]["medium"] == 1
        assert stats["success_rate"] == 100.0

    def test_channels_sorted_by_priority(self, client):
        channels = client.get(f"{BASE}/channels").json()["channels"]
        assert len(channels) == 5
        priorities = [c["priority"] for c in channels]
        assert priorities == sorted(priorities)
        assert {c["type"] for c in channels} == {"sms", "email", "push", "whatsapp", "voice"}

    def test_escalation_rules(self, client):
        rules = client.get(f"{BASE}/escalation-rules").json()["rules"]
        assert [r["id"] for r in rules] == [
            "critical_immediate", "high_priority", "standard_escalation",
        ]
        assert rules[0]["time_threshold"] == 5


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Self-test and Health
# ═══════════════════════════════════════════════════════════════════════════

class TestOperations:
    """System self-test and health probes."""

    def test_system_test(self, client):
        body = client.post(f"{BASE}/test", json={"actor_id": "admin-1"}).json()
        assert body["success"] is True
        fetched = client.get(f"{BASE}/alerts/{body['alert_id']}").json()
        assert fetched["status"] == "resolved"
        assert fetched["resolution"] == "System test completed successfully"

    def test_emergency_health(self, client):
        _create(client)
        body = client.get(f"{BASE}/health").json()
        assert body["status"] == "healthy"
        assert body["service"] == "emergency-alerts"
        assert body["open_alerts"] == 1
        assert body["channels_available"] == 5
        assert {c["name"] for c in body["components"]} >= {"ledger", "escalation_scheduler"}

    def test_root_health_probes(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}
        assert client.get("/health/ready").status_code == 200
        assert client.get("/").json()["docs"] == "/docs"
