from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.sentinel.schemas.common import AlertStatus, Severity, SourceType, TriggerActor


AlertSortField = Literal["timestamp", "severity", "status", "sourceType", "createdAt", "updatedAt"]
SortOrder = Literal["asc", "desc"]


class AlertCreate(BaseModel):
    """Request model for ingesting a new alert."""

    model_config = ConfigDict(populate_by_name=True)

    source_type: SourceType = Field(..., description="Originating monitoring module.", alias="sourceType")
    severity: Severity = Field(Severity.info, description="Initial severity.")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Source-specific details (driverId, vehicleId, speed, speedLimit, expiryDate, feedbackRating, ...).",
    )
    timestamp: Optional[datetime] = Field(
        default=None, description="When the underlying event happened; defaults to ingestion time."
    )


class AlertUpdate(BaseModel):
    """Request model for patching alert metadata/notes (triggers re-evaluation)."""

    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Keys merged into existing metadata.")
    notes: Optional[str] = Field(default=None, description="Free-text notes.")


class AlertResolveRequest(BaseModel):
    """Request model for manual resolution."""

    model_config = ConfigDict(populate_by_name=True)

    notes: Optional[str] = Field(default=None, description="Resolution notes.")
    user_id: Optional[str] = Field(default=None, description="Resolving operator id.", alias="userId")


class AlertOut(BaseModel):
    """Response model for an alert."""

    model_config = ConfigDict(populate_by_name=True)

    alert_id: str = Field(..., description="Globally unique alert id.", alias="alertId")
    source_type: SourceType = Field(..., alias="sourceType")
    severity: Severity
    status: AlertStatus
    timestamp: datetime = Field(..., description="Event time (UTC).")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    escalated_at: Optional[datetime] = Field(default=None, alias="escalatedAt")
    auto_closed_at: Optional[datetime] = Field(default=None, alias="autoClosedAt")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    closure_reason: Optional[str] = Field(default=None, alias="closureReason")
    resolved_by: Optional[str] = Field(default=None, alias="resolvedBy")
    notes: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class HistoryEntryOut(BaseModel):
    """Response model for one audit entry."""

    model_config = ConfigDict(populate_by_name=True)

    alert_id: str = Field(..., alias="alertId")
    from_status: Optional[AlertStatus] = Field(default=None, alias="fromStatus")
    to_status: AlertStatus = Field(..., alias="toStatus")
    reason: Optional[str] = None
    triggered_by: TriggerActor = Field(..., alias="triggeredBy")
    user_id: Optional[str] = Field(default=None, alias="userId")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class AlertDetailResponse(BaseModel):
    """Alert plus its transition history (newest first)."""

    alert: AlertOut
    history: List[HistoryEntryOut]


class AlertListResponse(BaseModel):
    """Envelope for listing alerts."""

    items: List[AlertOut] = Field(..., description="Page of alerts.")
    total: int = Field(..., ge=0, description="Total alerts matching the filters.")
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    pages: int = Field(..., ge=0)
