"""
FastAPI routes: emergency contacts, SOS trigger, tracking and resolution.

Provides endpoints to:
    POST /api/emergency/contacts               — save (replace) contact list
    GET  /api/emergency/contacts/{owner_id}    — read contact list
    POST /api/emergency/sos                    — trigger an SOS
    GET  /api/emergency/alerts/{owner_id}      — alert history, newest first
    GET  /api/emergency/track/{tracking_code}  — look up one alert
    POST /api/emergency/resolve/{alert_id}     — mark resolved, notify primaries
    GET  /api/emergency/stats/{owner_id}       — per-owner counters
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from backend.app.api.schemas import SaveContactsRequest, SosRequest
from backend.app.core.config import settings
from backend.app.emergency.lifecycle import AlertLifecycle

router = APIRouter(prefix=f"{settings.API_PREFIX}/emergency", tags=["emergency"])


def get_lifecycle(request: Request) -> AlertLifecycle:
    """The lifecycle built during application startup."""
    return request.app.state.lifecycle


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

@router.post("/contacts", summary="Save emergency contacts")
async def save_contacts(
    body: SaveContactsRequest,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    count = await lifecycle.save_contacts(
        body.owner_id, [c.to_domain() for c in body.contacts],
    )
    return {
        "success": True,
        "message": "Emergency contacts saved successfully",
        "contact_count": count,
    }


@router.get("/contacts/{owner_id}", summary="Get emergency contacts")
async def get_contacts(
    owner_id: str,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    contacts = await lifecycle.get_contacts(owner_id)
    return {"success": True, "contacts": [c.to_dict() for c in contacts]}


# ---------------------------------------------------------------------------
# SOS
# ---------------------------------------------------------------------------

@router.post("/sos", summary="Trigger an SOS alert")
async def trigger_sos(
    body: SosRequest,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Dict[str, Any]:
    """
    Notify every saved contact over WhatsApp.

    Partial delivery failure is still a success: the per-contact outcome
    is in ``stats``.
    """
    summary = await lifecycle.trigger_sos(
        body.owner_id,
        body.location.to_domain() if body.location else None,
        alert_type=body.alert_type,
        message=body.message,
        owner_name=body.owner_name,
        idempotency_key=idempotency_key,
    )
    return {
        "success": True,
        "message": "Emergency alert sent to contacts",
        **summary.to_dict(),
    }


@router.get("/alerts/{owner_id}", summary="Alert history")
async def list_alerts(
    owner_id: str,
    limit: int = Query(settings.ALERTS_DEFAULT_LIMIT, ge=1),
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    alerts = await lifecycle.list_alerts(owner_id, min(limit, settings.ALERTS_MAX_LIMIT))
    return {"success": True, "alerts": [a.to_dict() for a in alerts]}


@router.get("/track/{tracking_code}", summary="Track an alert")
async def track_alert(
    tracking_code: str,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    alert = await lifecycle.track(tracking_code)
    return {"success": True, "alert": alert.to_dict()}


@router.post("/resolve/{alert_id}", summary="Resolve an alert")
async def resolve_alert(
    alert_id: str,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    result = await lifecycle.resolve(alert_id)
    message = (
        "Emergency alert resolved"
        if result.transitioned
        else "Emergency alert was already resolved"
    )
    return {
        "success": True,
        "message": message,
        "alert": result.alert.to_dict(),
        "notifications": result.notifications.stats(),
    }


@router.get("/stats/{owner_id}", summary="Per-owner alert statistics")
async def owner_stats(
    owner_id: str,
    lifecycle: AlertLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return {"success": True, "stats": await lifecycle.stats(owner_id)}
