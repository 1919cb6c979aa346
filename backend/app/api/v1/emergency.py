"""
FastAPI route: Emergency alert lifecycle endpoints.

Provides endpoints to:
    POST /api/v1/emergency/alerts                    — raise an alert
    POST /api/v1/emergency/alerts/{id}/acknowledge   — acknowledge it
    POST /api/v1/emergency/alerts/{id}/resolve       — resolve it
    GET  /api/v1/emergency/alerts/active             — open alerts
    GET  /api/v1/emergency/alerts                    — full history
    GET  /api/v1/emergency/alerts/{id}               — one alert
    GET  /api/v1/emergency/alerts/{id}/delivery      — fan-out reports
    GET  /api/v1/emergency/statistics                — dashboard counters
    GET  /api/v1/emergency/channels                  — channel configuration
    GET  /api/v1/emergency/escalation-rules          — escalation routing
    POST /api/v1/emergency/test                      — system self-test
    GET  /api/v1/emergency/health                    — service health
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from backend.app.core.health import run_health_check
from backend.app.emergency.engine import EmergencyAlertEngine
from backend.app.emergency.models import Channel, Severity

router = APIRouter(prefix="/api/v1/emergency", tags=["emergency-alerts"])


def get_engine(request: Request) -> EmergencyAlertEngine:
    """The engine instance owned by the running application."""
    return request.app.state.engine


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class CoordinatesInput(BaseModel):
    lat: float = Field(..., ge=-90, le=90, examples=[17.9970])
    lng: float = Field(..., ge=-180, le=180, examples=[-76.7936])


class LocationInput(BaseModel):
    """Where the emergency is happening."""
    parish: Optional[str] = Field(None, examples=["Kingston"])
    polling_station: Optional[str] = Field(None, examples=["St. Andrew Primary"])
    coordinates: Optional[CoordinatesInput] = None


class CreateAlertRequest(BaseModel):
    """Raise a new emergency alert."""
    title: str = Field(..., min_length=1, examples=["Ballot box tampering"])
    description: str = Field("", examples=["Two men forced entry to the counting room."])
    severity: Optional[str] = Field(
        None, examples=["critical"],
        description="low / medium / high / critical",
    )
    category: str = Field("other", examples=["security_threat"])
    location: LocationInput = Field(default_factory=LocationInput)
    channels: Optional[List[str]] = Field(
        None, examples=[["sms", "email"]],
        description="Defaults to email only",
    )
    recipients: List[str] = Field(
        default_factory=list,
        examples=[["coordinator@example.com", "+18765550101"]],
        description="Emails, phone numbers or user ids; empty targets by role",
    )
    created_by: Optional[str] = Field(None, examples=["observer-17"])


class AcknowledgeRequest(BaseModel):
    """Request body for acknowledging an alert."""
    actor_id: str = Field(..., min_length=1, examples=["coordinator-2"])


class ResolveRequest(BaseModel):
    """Request body for resolving an alert."""
    actor_id: str = Field(..., min_length=1, examples=["coordinator-2"])
    resolution: str = Field("", examples=["Police secured the station."])


class SystemTestRequest(BaseModel):
    actor_id: str = Field("system", examples=["admin-1"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/alerts",
    status_code=201,
    summary="Raise an emergency alert",
    description=(
        "Records the alert, arms its severity-based escalation timer and "
        "notifies recipients in the background."
    ),
)
async def create_alert(
    request: CreateAlertRequest,
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    coords = request.location.coordinates
    alert = await engine.create(
        title=request.title,
        description=request.description,
        severity=request.severity,
        category=request.category,
        parish=request.location.parish,
        polling_station=request.location.polling_station,
        coordinates=(coords.lat, coords.lng) if coords else None,
        channels=request.channels,
        recipients=request.recipients,
        created_by=request.created_by,
    )
    return alert.to_dict()


@router.post(
    "/alerts/{alert_id}/acknowledge",
    summary="Acknowledge an alert",
    description="Stops the escalation countdown for an active or escalated alert.",
)
async def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alert = await engine.acknowledge(alert_id, request.actor_id)
    return alert.to_dict()


@router.post(
    "/alerts/{alert_id}/resolve",
    summary="Resolve an alert",
)
async def resolve_alert(
    alert_id: str,
    request: ResolveRequest,
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alert = await engine.resolve(alert_id, request.actor_id, request.resolution)
    return alert.to_dict()


@router.get(
    "/alerts/active",
    summary="List open alerts",
    description="Alerts that are active, acknowledged or escalated, newest first.",
)
async def list_active_alerts(
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alerts = engine.active_alerts()
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@router.get(
    "/alerts",
    summary="List all alerts",
    description="Every alert in the ledger, resolved ones included, newest first.",
)
async def list_all_alerts(
    severity: Optional[str] = Query(None, description="Filter by severity"),
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alerts = await engine.all_alerts()
    if severity:
        alerts = [a for a in alerts if a.severity.value == severity.lower()]
    if status:
        alerts = [a for a in alerts if a.status.value == status.lower()]
    page = alerts[:limit]
    return {"count": len(page), "alerts": [a.to_dict() for a in page]}


@router.get("/alerts/{alert_id}", summary="Get one alert")
async def get_alert(
    alert_id: str,
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alert = await engine.get(alert_id)
    data = alert.to_dict()
    deadline = engine.escalation_deadline(alert_id)
    data["escalation_deadline"] = deadline.isoformat() if deadline else None
    return data


@router.get(
    "/alerts/{alert_id}/delivery",
    summary="Get delivery reports",
    description="Latest initial and escalation fan-out reports for an alert.",
)
async def get_delivery(
    alert_id: str,
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    await engine.get(alert_id)  # 404 for unknown ids
    initial = engine.delivery_report(alert_id)
    escalation = engine.delivery_report(alert_id, escalation=True)
    return {
        "alert_id": alert_id,
        "initial": initial.to_dict() if initial else None,
        "escalation": escalation.to_dict() if escalation else None,
    }


@router.get("/statistics", summary="Dashboard statistics")
async def get_statistics(
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    stats = await engine.statistics()
    return stats.to_dict()


@router.get(
    "/channels",
    summary="List notification channels",
    description="Channel configuration ordered by priority.",
)
async def list_channels(
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return {"channels": [c.to_dict() for c in engine.list_channels()]}


@router.get("/escalation-rules", summary="List escalation rules")
async def list_escalation_rules(
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return {"rules": [r.to_dict() for r in engine.list_escalation_rules()]}


@router.post(
    "/test",
    summary="Run the system self-test",
    description="Creates a low-severity email alert to the test address and resolves it.",
)
async def system_test(
    request: SystemTestRequest = SystemTestRequest(),
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return await engine.run_system_test(request.actor_id)


@router.get("/health", summary="Emergency service health check")
async def health(
    engine: EmergencyAlertEngine = Depends(get_engine),
) -> Dict[str, Any]:
    report = await run_health_check(engine)
    return {
        **report.to_dict(),
        "service": "emergency-alerts",
        "open_alerts": len(engine.active_alerts()),
        "severities": [s.value for s in Severity],
        "channels_available": len(Channel),
    }
