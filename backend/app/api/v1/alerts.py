"""
FastAPI routes: blockage alerts.

Provides endpoints to:
    POST /api/v1/alerts                     — report a blocking vehicle
    GET  /api/v1/alerts/{id}                — alert + recipient states
    POST /api/v1/alerts/{id}/respond        — recipient replies (acknowledged)
    POST /api/v1/alerts/{id}/resolve        — recipient moved the car
    POST /api/v1/alerts/{id}/escalate       — sender re-sends the next step
    POST /api/v1/alerts/{id}/cancel         — sender withdraws the alert
    GET  /api/v1/alerts/{id}/deliveries     — dispatch audit (sender only)
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from backend.app.alerts.models import DeliveryReport, RecipientStatus
from backend.app.alerts.workflow import AlertWorkflow
from backend.app.api.deps import get_caller_id, get_workflow, resolve_fingerprint
from backend.app.api.schemas import (
    AlertOut,
    DeliveryLogOut,
    DeliverySummaryOut,
    ReportBlockageRequest,
    ReportBlockageResponse,
    RespondRequest,
    TransitionResponse,
)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _summary(report: Optional[DeliveryReport]) -> Optional[DeliverySummaryOut]:
    if report is None:
        return None
    return DeliverySummaryOut(
        step=report.step,
        recipients_targeted=report.recipients_targeted,
        targeted=report.targeted,
        succeeded=report.succeeded,
        transient_failed=report.transient_failed,
        invalid_removed=report.invalid_removed,
        recipients_delivered=report.recipients_delivered,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ReportBlockageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report a blocking vehicle",
    description=(
        "Creates the alert and one recipient record per registered user of the "
        "plate, then pushes step 0. An alert id is returned even when nobody "
        "is registered or delivery fails."
    ),
)
async def report_blockage(
    request: ReportBlockageRequest,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    fingerprint = resolve_fingerprint(request.fingerprint, request.plate)
    ttl = timedelta(minutes=request.ttl_minutes) if request.ttl_minutes else None
    result = await workflow.report_blockage(
        caller_id, fingerprint, request.urgency.value, request.message, ttl,
    )
    return ReportBlockageResponse(
        alert_id=result.alert_id,
        status=result.alert.status,
        recipient_count=len(result.alert.recipients),
        expires_at=result.alert.expires_at.isoformat(),
        delivery=_summary(result.delivery),
        dispatch_error=result.dispatch_error,
    )


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    summary="Get an alert (sender or recipient)",
)
async def get_alert(
    alert_id: str,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    alert = await workflow.get_alert(alert_id, caller_id)
    return AlertOut(**alert.to_dict())


@router.post(
    "/{alert_id}/respond",
    response_model=TransitionResponse,
    summary="Reply to an alert",
)
async def respond(
    alert_id: str,
    request: RespondRequest,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    applied = await workflow.respond(alert_id, caller_id, request.response.value)
    return TransitionResponse(
        alert_id=alert_id, status=RecipientStatus.ACKNOWLEDGED.value, applied=applied,
    )


@router.post(
    "/{alert_id}/resolve",
    response_model=TransitionResponse,
    summary="Mark the blockage as resolved",
)
async def resolve(
    alert_id: str,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    applied = await workflow.resolve(alert_id, caller_id)
    return TransitionResponse(
        alert_id=alert_id, status=RecipientStatus.RESOLVED.value, applied=applied,
    )


@router.post(
    "/{alert_id}/escalate",
    response_model=DeliverySummaryOut,
    summary="Re-send the next escalation step",
    description="Sender only. Targets recipients that have not answered yet.",
)
async def escalate(
    alert_id: str,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    report = await workflow.escalate(alert_id, caller_id)
    return _summary(report)


@router.post(
    "/{alert_id}/cancel",
    response_model=AlertOut,
    summary="Cancel an open alert (sender only)",
)
async def cancel(
    alert_id: str,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    await workflow.cancel(alert_id, caller_id)
    alert = await workflow.get_alert(alert_id, caller_id)
    return AlertOut(**alert.to_dict())


@router.get(
    "/{alert_id}/deliveries",
    response_model=List[DeliveryLogOut],
    summary="Dispatch audit log (sender only)",
)
async def deliveries(
    alert_id: str,
    caller_id: str = Depends(get_caller_id),
    workflow: AlertWorkflow = Depends(get_workflow),
):
    logs = await workflow.deliveries(alert_id, caller_id)
    return [DeliveryLogOut(**log.to_dict()) for log in logs]
