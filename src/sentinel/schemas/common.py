from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Severity levels for alerts."""

    info = "INFO"
    warning = "WARNING"
    critical = "CRITICAL"


class AlertStatus(str, Enum):
    """Lifecycle status of an alert."""

    open = "OPEN"
    escalated = "ESCALATED"
    auto_closed = "AUTO_CLOSED"
    resolved = "RESOLVED"


class SourceType(str, Enum):
    """Monitoring module an alert originates from."""

    overspeed = "overspeed"
    compliance = "compliance"
    feedback_negative = "feedback_negative"
    maintenance = "maintenance"
    other = "other"


class TriggerActor(str, Enum):
    """Who caused a status transition (recorded on history entries)."""

    system = "SYSTEM"
    user = "USER"
    rule_engine = "RULE_ENGINE"
    auto_close_job = "AUTO_CLOSE_JOB"


ACTIVE_STATUSES: FrozenSet[AlertStatus] = frozenset({AlertStatus.open, AlertStatus.escalated})
TERMINAL_STATUSES: FrozenSet[AlertStatus] = frozenset({AlertStatus.auto_closed, AlertStatus.resolved})


class HealthResponse(BaseModel):
    """Response model for health endpoints."""

    status: str = Field(..., description="High-level health status string (e.g., 'ok').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    detail: str = Field(..., description="Human-readable error details.")
    code: Optional[str] = Field(default=None, description="Optional machine-readable error code.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as stored by older drivers) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
