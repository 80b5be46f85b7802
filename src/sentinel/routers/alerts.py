from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.sentinel.schemas.alerts import (
    AlertCreate,
    AlertDetailResponse,
    AlertListResponse,
    AlertOut,
    AlertResolveRequest,
    AlertSortField,
    AlertUpdate,
    SortOrder,
)
from src.sentinel.schemas.common import AlertStatus, ErrorResponse, Severity, SourceType
from src.sentinel.services import alerts_service

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.post(
    "",
    response_model=AlertOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create alert",
    description="Ingest a new alert. It is evaluated against the active rule for its source type immediately.",
    operation_id="create_alert",
)
async def create_alert(request: Request, payload: AlertCreate) -> AlertOut:
    """Create an alert."""
    return await alerts_service.create_alert(request, payload)


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="List alerts filtered by status, severity, sourceType and driverId, with pagination and sorting.",
    operation_id="list_alerts",
)
async def list_alerts(
    request: Request,
    status_filter: Optional[AlertStatus] = Query(default=None, alias="status"),
    severity: Optional[Severity] = Query(default=None),
    source_type: Optional[SourceType] = Query(default=None, alias="sourceType"),
    driver_id: Optional[str] = Query(default=None, alias="driverId"),
    page: int = Query(1, ge=1, le=100000),
    limit: int = Query(20, ge=1, le=500),
    sort_by: AlertSortField = Query("timestamp", alias="sortBy"),
    order: SortOrder = Query("desc"),
) -> AlertListResponse:
    """List alerts."""
    return await alerts_service.list_alerts(
        request,
        status=status_filter,
        severity=severity,
        source_type=source_type,
        driver_id=driver_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        order=order,
    )


@router.get(
    "/{alert_id}",
    response_model=AlertDetailResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    description="Fetch an alert by alertId together with its transition history (newest first).",
    operation_id="get_alert",
)
async def get_alert(
    request: Request,
    alert_id: str = Path(..., description="Alert id (ALT-...)."),
) -> AlertDetailResponse:
    """Get an alert and its history."""
    detail = await alerts_service.get_alert_detail(request, alert_id)
    if not detail:
        raise HTTPException(status_code=404, detail="alert not found")
    return detail


@router.put(
    "/{alert_id}/resolve",
    response_model=AlertOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Resolve alert",
    description=(
        "Manually resolve an OPEN or ESCALATED alert. Closed alerts are rejected with 400; "
        "a concurrent status change is rejected with 409."
    ),
    operation_id="resolve_alert",
)
async def resolve_alert(
    request: Request,
    payload: AlertResolveRequest,
    alert_id: str = Path(..., description="Alert id (ALT-...)."),
) -> AlertOut:
    """Resolve an alert."""
    try:
        resolved = await alerts_service.resolve_alert(request, alert_id, payload)
    except alerts_service.AlertAlreadyClosedError:
        raise HTTPException(status_code=400, detail="alert is already closed")
    except alerts_service.StaleAlertError:
        raise HTTPException(status_code=409, detail="alert was modified concurrently")
    if not resolved:
        raise HTTPException(status_code=404, detail="alert not found")
    return resolved


@router.patch(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Update alert",
    description="Merge metadata and/or set notes, then re-evaluate the alert against its rule.",
    operation_id="update_alert",
)
async def update_alert(
    request: Request,
    payload: AlertUpdate,
    alert_id: str = Path(..., description="Alert id (ALT-...)."),
) -> AlertOut:
    """Patch an alert."""
    try:
        updated = await alerts_service.update_alert(request, alert_id, payload)
    except alerts_service.StaleAlertError:
        raise HTTPException(status_code=409, detail="alert was modified concurrently")
    if not updated:
        raise HTTPException(status_code=404, detail="alert not found")
    return updated


@router.delete(
    "/{alert_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete alert",
    description="Delete an alert by alertId.",
    operation_id="delete_alert",
)
async def delete_alert(
    request: Request,
    alert_id: str = Path(..., description="Alert id (ALT-...)."),
) -> None:
    """Delete an alert."""
    ok = await alerts_service.delete_alert(request, alert_id)
    if not ok:
        raise HTTPException(status_code=404, detail="alert not found")
    return None
