from __future__ import annotations

import json
import logging
import math
import time
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from fastapi import Request

from src.sentinel.db.repositories import StaleAlertError
from src.sentinel.models import Alert, HistoryEntry
from src.sentinel.schemas.alerts import (
    AlertCreate,
    AlertDetailResponse,
    AlertListResponse,
    AlertOut,
    AlertResolveRequest,
    AlertUpdate,
    HistoryEntryOut,
)
from src.sentinel.schemas.common import AlertStatus, Severity, SourceType, TriggerActor, utc_now
from src.sentinel.state import AppState, get_state

logger = logging.getLogger(__name__)

ALERT_LIST_CACHE_PREFIX = "alerts:list:"


class AlertAlreadyClosedError(ValueError):
    """Raised when a manual resolve targets an AUTO_CLOSED or RESOLVED alert."""


def _new_alert_id() -> str:
    return f"ALT-{int(time.time() * 1000)}-{str(uuid4()).split('-')[0]}"


def _alert_to_out(alert: Alert) -> AlertOut:
    return AlertOut(
        alert_id=alert.alert_id,
        source_type=alert.source_type,
        severity=alert.severity,
        status=alert.status,
        timestamp=alert.timestamp,
        metadata=alert.metadata,
        escalated_at=alert.escalated_at,
        auto_closed_at=alert.auto_closed_at,
        resolved_at=alert.resolved_at,
        closure_reason=alert.closure_reason,
        resolved_by=alert.resolved_by,
        notes=alert.notes,
        expires_at=alert.expires_at,
        created_at=alert.created_at,
        updated_at=alert.updated_at,
    )


def _history_to_out(entry: HistoryEntry) -> HistoryEntryOut:
    return HistoryEntryOut(
        alert_id=entry.alert_id,
        from_status=entry.from_status,
        to_status=entry.to_status,
        reason=entry.reason,
        triggered_by=entry.triggered_by,
        user_id=entry.user_id,
        metadata=entry.metadata,
        timestamp=entry.timestamp,
    )


def _invalidate_views(state: AppState, *, dashboard: bool = True) -> None:
    state.cache.invalidate_pattern("alerts:")
    if dashboard:
        state.cache.invalidate_pattern("dashboard:")


# PUBLIC_INTERFACE
async def create_alert(request: Request, payload: AlertCreate) -> AlertOut:
    """
    Ingest a new alert.

    Persists it as OPEN with the default expiry horizon, logs the creation history entry,
    runs it through the rule engine immediately and invalidates cached views.
    """
    state = get_state(request.app)
    now = utc_now()

    alert = Alert(
        alert_id=_new_alert_id(),
        source_type=payload.source_type,
        severity=payload.severity,
        status=AlertStatus.open,
        timestamp=payload.timestamp or now,
        metadata={**payload.metadata, "eventCount": 1},
        expires_at=now + timedelta(days=state.config.alert_expiry_days),
    )
    await state.alerts.insert(alert)
    await state.history.append(
        alert.alert_id, alert.id, None, AlertStatus.open, "Alert created", TriggerActor.system
    )

    result = await state.engine.process_alert(alert)
    if not result.success:
        logger.warning("Rule evaluation failed for new alert %s: %s", alert.alert_id, result.error)

    _invalidate_views(state)
    logger.info("Alert created: %s", alert.alert_id)
    return _alert_to_out(alert)


# PUBLIC_INTERFACE
async def list_alerts(
    request: Request,
    *,
    status: Optional[AlertStatus] = None,
    severity: Optional[Severity] = None,
    source_type: Optional[SourceType] = None,
    driver_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "timestamp",
    order: str = "desc",
) -> AlertListResponse:
    """List alerts with filters and pagination; responses are cached briefly under alerts:list:."""
    state = get_state(request.app)
    filters = {
        "status": status.value if status else None,
        "severity": severity.value if severity else None,
        "sourceType": source_type.value if source_type else None,
        "driverId": driver_id,
    }
    cache_key = f"{ALERT_LIST_CACHE_PREFIX}{json.dumps(filters, sort_keys=True)}:{page}:{limit}:{sort_by}:{order}"
    cached = state.cache.get(cache_key)
    if cached is not None:
        return cached

    items, total = await state.alerts.list_alerts(
        status=status,
        severity=severity.value if severity else None,
        source_type=source_type,
        driver_id=driver_id,
        skip=(page - 1) * limit,
        limit=limit,
        sort_by=sort_by,
        descending=(order == "desc"),
    )
    response = AlertListResponse(
        items=[_alert_to_out(a) for a in items],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if limit else 0,
    )
    state.cache.set(cache_key, response, state.config.alert_list_cache_ttl_sec)
    return response


# PUBLIC_INTERFACE
async def get_alert_detail(request: Request, alert_id: str) -> Optional[AlertDetailResponse]:
    """Fetch an alert with its history (newest first); None if not found."""
    state = get_state(request.app)
    alert = await state.alerts.get(alert_id)
    if alert is None:
        return None
    history = await state.history.for_alert(alert_id)
    return AlertDetailResponse(alert=_alert_to_out(alert), history=[_history_to_out(h) for h in history])


# PUBLIC_INTERFACE
async def resolve_alert(request: Request, alert_id: str, payload: AlertResolveRequest) -> Optional[AlertOut]:
    """
    Manually resolve an alert.

    Returns None if the alert does not exist; raises AlertAlreadyClosedError for terminal alerts
    and StaleAlertError when the stored alert changed status concurrently.
    """
    state = get_state(request.app)
    alert = await state.alerts.get(alert_id)
    if alert is None:
        return None
    if alert.is_terminal:
        raise AlertAlreadyClosedError(f"alert {alert_id} is already closed ({alert.status.value})")

    old_status = alert.status
    alert.resolve(payload.user_id, payload.notes)
    if not await state.alerts.save_guarded(alert, old_status):
        raise StaleAlertError(f"alert {alert_id} changed while it was being resolved")
    await state.history.append(
        alert.alert_id,
        alert.id,
        old_status,
        AlertStatus.resolved,
        payload.notes or "Manually resolved",
        TriggerActor.user,
        payload.user_id,
    )

    _invalidate_views(state)
    logger.info("Alert resolved: %s by %s", alert.alert_id, payload.user_id or "unknown")
    return _alert_to_out(alert)


# PUBLIC_INTERFACE
async def update_alert(request: Request, alert_id: str, payload: AlertUpdate) -> Optional[AlertOut]:
    """
    Merge metadata / set notes, persist, then re-run the rule engine.

    Returns None if not found; raises StaleAlertError when the stored alert changed status concurrently.
    """
    state = get_state(request.app)
    alert = await state.alerts.get(alert_id)
    if alert is None:
        return None

    if payload.metadata:
        alert.metadata = {**(alert.metadata or {}), **payload.metadata}
    if payload.notes:
        alert.notes = payload.notes
    if not await state.alerts.save_guarded(alert, alert.status, include_metadata=True):
        raise StaleAlertError(f"alert {alert_id} changed while it was being updated")

    await state.engine.process_alert(alert)

    _invalidate_views(state, dashboard=False)
    logger.info("Alert updated: %s", alert.alert_id)
    return _alert_to_out(alert)


# PUBLIC_INTERFACE
async def delete_alert(request: Request, alert_id: str) -> bool:
    """Delete an alert. History entries are kept."""
    state = get_state(request.app)
    deleted = await state.alerts.delete(alert_id)
    if deleted:
        _invalidate_views(state)
        logger.info("Alert deleted: %s", alert_id)
    return deleted
