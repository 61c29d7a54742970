"""
FastAPI routes: emergency alerts for counselors, guardians and admins.

    GET  /api/emergency-alerts/unread             — caller's unread alerts
    GET  /api/emergency-alerts/unread-count       — caller's unread count
    POST /api/emergency-alerts/read-all           — mark every alert read
    GET  /api/emergency-alerts/counselor          — counselor list (paged)
    GET  /api/emergency-alerts/counselor/pending  — counselor PENDING queue
    GET  /api/emergency-alerts/counselor/stats    — counselor statistics
    GET  /api/emergency-alerts/admin              — jurisdiction list (paged)
    GET  /api/emergency-alerts/admin/stats        — global statistics
    GET  /api/emergency-alerts/guardian           — guardian list (paged)
    GET  /api/emergency-alerts/{id}               — detail (implicit read)
    POST /api/emergency-alerts/{id}/read          — mark one alert read
    POST /api/emergency-alerts/{id}/process       — status transition
    POST /api/emergency-alerts/{id}/start         — shortcut for IN_PROGRESS

Static paths are registered before `/{alert_id}` so they are not captured
by it.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from carewatch.app.alerts.models import Actor, AlertStatus
from carewatch.app.api.deps import get_actor, get_container
from carewatch.app.api.schemas import MarkAllReadResponse, ProcessAlertRequest, UnreadCountResponse
from carewatch.app.container import AlertContainer

router = APIRouter(prefix="/api/emergency-alerts", tags=["emergency-alerts"])

PAGE = Query(0, ge=0, description="0-based page index")
SIZE = Query(20, ge=1, le=100, description="Page size")


# ---------------------------------------------------------------------------
# Read state
# ---------------------------------------------------------------------------

@router.get("/unread", summary="Unread alerts for the caller, CRITICAL first")
async def unread_list(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    return await container.alerts.unread_list(actor)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    return UnreadCountResponse(count=await container.read_tracker.unread_count(actor.user_id))


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    return MarkAllReadResponse(marked=await container.read_tracker.mark_all_read(actor.user_id))


# ---------------------------------------------------------------------------
# Role-scoped lists
# ---------------------------------------------------------------------------

@router.get("/counselor", summary="Alerts for the counselor's assigned subjects")
async def counselor_alerts(
    page: int = PAGE,
    size: int = SIZE,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.alerts.list_for_counselor(actor, page, size)
    return result.to_dict(lambda s: s.to_dict())


@router.get("/counselor/pending", summary="PENDING alerts awaiting the counselor")
async def counselor_pending(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    return [s.to_dict() for s in await container.alerts.list_pending_for_counselor(actor)]


@router.get("/counselor/stats")
async def counselor_stats(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, int]:
    return (await container.alerts.stats_for_counselor(actor)).to_dict()


@router.get("/admin", summary="Alerts inside the admin's jurisdiction")
async def admin_alerts(
    page: int = PAGE,
    size: int = SIZE,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.alerts.list_for_admin(actor, page, size)
    return result.to_dict(lambda s: s.to_dict())


@router.get("/admin/stats")
async def admin_stats(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, int]:
    return (await container.alerts.stats(actor)).to_dict()


@router.get("/guardian", summary="Alerts for the guardian's linked subjects")
async def guardian_alerts(
    page: int = PAGE,
    size: int = SIZE,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.alerts.list_for_guardian(actor, page, size)
    return result.to_dict(lambda s: s.to_dict())


# ---------------------------------------------------------------------------
# Single alert
# ---------------------------------------------------------------------------

@router.get("/{alert_id}", summary="Alert detail; marks it read for a recipient")
async def alert_detail(
    alert_id: int,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    detail = await container.alerts.get_detail(alert_id, actor)
    return detail.to_dict()


@router.post("/{alert_id}/read")
async def mark_read(
    alert_id: int,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    row = await container.read_tracker.mark_read(alert_id, actor.user_id)
    return {
        "alertId": alert_id,
        "isRead": row.is_read,
        "readAt": row.read_at.isoformat() if row.read_at else None,
    }


@router.post("/{alert_id}/process", summary="Move the alert through its state machine")
async def process_alert(
    alert_id: int,
    request: ProcessAlertRequest,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    alert = await container.alerts.process_alert(alert_id, actor.user_id, request.status, request.note)
    return alert.to_processed_dict()


@router.post("/{alert_id}/start", summary="Start processing (IN_PROGRESS)")
async def start_processing(
    alert_id: int,
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    alert = await container.alerts.process_alert(alert_id, actor.user_id, AlertStatus.IN_PROGRESS)
    return alert.to_processed_dict()
