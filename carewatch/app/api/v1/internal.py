"""
FastAPI routes: internal endpoints for the call agent and SMS operations.

All routes require the internal API key header.

    POST /api/internal/emergency-alerts               — create an alert
    POST /api/internal/emergency-alerts/health        — CRITICAL / HEALTH
    POST /api/internal/emergency-alerts/mental        — MENTAL (CRITICAL | WARNING)
    POST /api/internal/emergency-alerts/no-response   — WARNING / NO_RESPONSE
    POST /api/internal/sms/status                     — provider delivery receipt
    GET  /api/internal/sms/failed                     — failed alert SMS
    POST /api/internal/sms/resend-failed              — re-queue failed alert SMS
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from carewatch.app.alerts.alert_service import (
    CreateAlertCommand,
    health_alert_command,
    mental_alert_command,
    no_response_alert_command,
)
from carewatch.app.api.deps import get_container, require_internal_key
from carewatch.app.api.schemas import (
    CreateAlertRequest,
    DeliveryReceipt,
    HealthAlertRequest,
    MentalAlertRequest,
    NoResponseAlertRequest,
)
from carewatch.app.container import AlertContainer

alerts_router = APIRouter(
    prefix="/api/internal/emergency-alerts",
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)
sms_router = APIRouter(
    prefix="/api/internal/sms",
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)


# ---------------------------------------------------------------------------
# Alert creation
# ---------------------------------------------------------------------------

async def _create(container: AlertContainer, command: CreateAlertCommand) -> Dict[str, Any]:
    alert = await container.alerts.create_alert(command)
    return alert.to_created_dict()


@alerts_router.post("", status_code=status.HTTP_201_CREATED, summary="Create an emergency alert")
async def create_alert(
    request: CreateAlertRequest,
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await _create(container, CreateAlertCommand(
        subject_id=request.subject_id,
        severity=request.severity,
        category=request.category,
        title=request.title,
        description=request.description,
        call_session_id=request.call_session_id,
        danger_keywords=request.danger_keywords,
        transcript_excerpt=request.transcript_excerpt,
    ))


@alerts_router.post("/health", status_code=status.HTTP_201_CREATED)
async def create_health_alert(
    request: HealthAlertRequest,
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await _create(container, health_alert_command(
        request.subject_id,
        call_session_id=request.call_session_id,
        title=request.title,
        description=request.description,
        danger_keywords=request.danger_keywords,
        transcript_excerpt=request.transcript_excerpt,
    ))


@alerts_router.post("/mental", status_code=status.HTTP_201_CREATED)
async def create_mental_alert(
    request: MentalAlertRequest,
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await _create(container, mental_alert_command(
        request.subject_id,
        is_critical=request.is_critical,
        call_session_id=request.call_session_id,
        title=request.title,
        description=request.description,
        danger_keywords=request.danger_keywords,
        transcript_excerpt=request.transcript_excerpt,
    ))


@alerts_router.post("/no-response", status_code=status.HTTP_201_CREATED)
async def create_no_response_alert(
    request: NoResponseAlertRequest,
    container: AlertContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await _create(container, no_response_alert_command(
        request.subject_id,
        attempt_count=request.attempt_count,
        last_attempt_time=request.last_attempt_time,
    ))


# ---------------------------------------------------------------------------
# SMS operations
# ---------------------------------------------------------------------------

@sms_router.post("/status", summary="Provider delivery-status callback")
async def delivery_status(
    receipt: DeliveryReceipt,
    container: AlertContainer = Depends(get_container),
):
    log = await container.sms_worker.handle_delivery_receipt(
        receipt.message_sid, receipt.message_status, receipt.error_message,
    )
    return {
        "messageSid": receipt.message_sid,
        "matched": log is not None,
        "status": log.status.value if log is not None else None,
    }


@sms_router.get("/failed", summary="Alert recipients whose SMS failed")
async def failed_sms(container: AlertContainer = Depends(get_container)):
    items = await container.alerts.failed_sms()
    return {"count": len(items), "items": items}


@sms_router.post("/resend-failed", summary="Queue a fresh attempt for every failed alert SMS")
async def resend_failed(container: AlertContainer = Depends(get_container)):
    return {"queued": await container.alerts.resend_failed_sms()}
