from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.sentinel.schemas.common import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AlertStatus,
    Severity,
    SourceType,
    TriggerActor,
    as_utc,
    utc_now,
)

DEFAULT_ESCALATION_NOTE = "Auto-escalated by rule engine"


def _ref_str(v: Any) -> Optional[str]:
    return str(v) if v is not None else None


@dataclass
class Alert:
    """
    A fleet-monitoring alert and its lifecycle state machine.

    OPEN -> ESCALATED -> AUTO_CLOSED / RESOLVED. escalate() and auto_close() check the
    current status first and are no-ops when the guard fails, so repeated evaluation of the
    same alert changes its state at most once. resolve() is applied unconditionally; callers
    decide whether a terminal alert may be resolved.
    """

    alert_id: str
    source_type: SourceType
    severity: Severity = Severity.info
    status: AlertStatus = AlertStatus.open
    timestamp: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    escalated_at: Optional[datetime] = None
    auto_closed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closure_reason: Optional[str] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None

    # Persistent reference (Mongo _id as string); None until first save.
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def driver_id(self) -> Optional[str]:
        return (self.metadata or {}).get("driverId")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - as_utc(self.timestamp)).total_seconds() / 60.0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) <= (now or utc_now())

    # PUBLIC_INTERFACE
    def escalate(self, reason: Optional[str] = None) -> "Alert":
        """OPEN -> ESCALATED; forces CRITICAL severity. No-op from any other status."""
        if self.status == AlertStatus.open:
            self.status = AlertStatus.escalated
            self.severity = Severity.critical
            self.escalated_at = utc_now()
            self.notes = reason or DEFAULT_ESCALATION_NOTE
        return self

    # PUBLIC_INTERFACE
    def auto_close(self, reason: Optional[str] = None) -> "Alert":
        """OPEN/ESCALATED -> AUTO_CLOSED. No-op from a terminal status."""
        if self.status in ACTIVE_STATUSES:
            self.status = AlertStatus.auto_closed
            self.auto_closed_at = utc_now()
            self.closure_reason = reason
        return self

    # PUBLIC_INTERFACE
    def resolve(self, user_id: Optional[str], notes: Optional[str] = None) -> "Alert":
        """Manual resolution. Does not inspect the current status."""
        self.status = AlertStatus.resolved
        self.resolved_at = utc_now()
        self.resolved_by = user_id
        self.notes = notes
        return self

    def to_doc(self) -> dict:
        """Serialize to a Mongo document (camelCase keys, no _id)."""
        return {
            "alertId": self.alert_id,
            "sourceType": self.source_type.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata or {}),
            "escalatedAt": self.escalated_at,
            "autoClosedAt": self.auto_closed_at,
            "resolvedAt": self.resolved_at,
            "closureReason": self.closure_reason,
            "resolvedBy": self.resolved_by,
            "notes": self.notes,
            "expiresAt": self.expires_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> "Alert":
        return cls(
            alert_id=doc["alertId"],
            source_type=SourceType(doc["sourceType"]),
            severity=Severity(doc.get("severity", Severity.info.value)),
            status=AlertStatus(doc.get("status", AlertStatus.open.value)),
            timestamp=as_utc(doc.get("timestamp")) or utc_now(),
            metadata=dict(doc.get("metadata") or {}),
            escalated_at=as_utc(doc.get("escalatedAt")),
            auto_closed_at=as_utc(doc.get("autoClosedAt")),
            resolved_at=as_utc(doc.get("resolvedAt")),
            closure_reason=doc.get("closureReason"),
            resolved_by=_ref_str(doc.get("resolvedBy")),
            notes=doc.get("notes"),
            expires_at=as_utc(doc.get("expiresAt")),
            id=_ref_str(doc.get("_id")),
            created_at=as_utc(doc.get("createdAt")),
            updated_at=as_utc(doc.get("updatedAt")),
        )


@dataclass
class RuleConditions:
    """Independently evaluable rule conditions; None means "not configured"."""

    escalate_if_count: Optional[int] = None
    window_mins: Optional[int] = None
    auto_close_if: Optional[str] = None
    auto_close_after_mins: Optional[int] = None
    custom_conditions: Optional[Dict[str, Any]] = None

    def to_doc(self) -> dict:
        return {
            "escalate_if_count": self.escalate_if_count,
            "window_mins": self.window_mins,
            "auto_close_if": self.auto_close_if,
            "auto_close_after_mins": self.auto_close_after_mins,
            "custom_conditions": self.custom_conditions,
        }

    @classmethod
    def from_doc(cls, doc: Optional[dict]) -> "RuleConditions":
        doc = doc or {}
        return cls(
            escalate_if_count=doc.get("escalate_if_count"),
            window_mins=doc.get("window_mins"),
            auto_close_if=doc.get("auto_close_if"),
            auto_close_after_mins=doc.get("auto_close_after_mins"),
            custom_conditions=doc.get("custom_conditions"),
        )


@dataclass
class RuleActions:
    """Actions consumed by external notifiers; the engine only records them."""

    escalate_to_severity: Optional[Severity] = None
    notify: bool = False
    notification_channels: List[str] = field(default_factory=list)

    def to_doc(self) -> dict:
        return {
            "escalate_to_severity": self.escalate_to_severity.value if self.escalate_to_severity else None,
            "notify": bool(self.notify),
            "notificationChannels": list(self.notification_channels),
        }

    @classmethod
    def from_doc(cls, doc: Optional[dict]) -> "RuleActions":
        doc = doc or {}
        sev = doc.get("escalate_to_severity")
        return cls(
            escalate_to_severity=Severity(sev) if sev else None,
            notify=bool(doc.get("notify", False)),
            notification_channels=list(doc.get("notificationChannels") or []),
        )


@dataclass
class Rule:
    """Operator-owned escalation / auto-close rule for one source type."""

    rule_id: str
    source_type: SourceType
    name: str
    enabled: bool = True
    priority: int = 0
    description: Optional[str] = None
    conditions: RuleConditions = field(default_factory=RuleConditions)
    actions: RuleActions = field(default_factory=RuleActions)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_doc(self) -> dict:
        return {
            "ruleId": self.rule_id,
            "sourceType": self.source_type.value,
            "name": self.name,
            "description": self.description,
            "enabled": bool(self.enabled),
            "priority": int(self.priority),
            "conditions": self.conditions.to_doc(),
            "actions": self.actions.to_doc(),
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> "Rule":
        return cls(
            rule_id=doc["ruleId"],
            source_type=SourceType(doc["sourceType"]),
            name=doc.get("name", doc["ruleId"]),
            enabled=bool(doc.get("enabled", True)),
            priority=int(doc.get("priority", 0) or 0),
            description=doc.get("description"),
            conditions=RuleConditions.from_doc(doc.get("conditions")),
            actions=RuleActions.from_doc(doc.get("actions")),
            created_by=_ref_str(doc.get("createdBy")),
            created_at=as_utc(doc.get("createdAt")),
            updated_at=as_utc(doc.get("updatedAt")),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable audit record of one status transition."""

    alert_id: str
    alert_ref: Optional[str]
    from_status: Optional[AlertStatus]
    to_status: AlertStatus
    reason: Optional[str]
    triggered_by: TriggerActor
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_doc(self) -> dict:
        return {
            "alertId": self.alert_id,
            "alert": self.alert_ref,
            "fromStatus": self.from_status.value if self.from_status else None,
            "toStatus": self.to_status.value,
            "reason": self.reason,
            "triggeredBy": self.triggered_by.value,
            "userId": self.user_id,
            "metadata": dict(self.metadata or {}),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> "HistoryEntry":
        from_status = doc.get("fromStatus")
        return cls(
            alert_id=doc["alertId"],
            alert_ref=_ref_str(doc.get("alert")),
            from_status=AlertStatus(from_status) if from_status else None,
            to_status=AlertStatus(doc["toStatus"]),
            reason=doc.get("reason"),
            triggered_by=TriggerActor(doc.get("triggeredBy", TriggerActor.system.value)),
            user_id=_ref_str(doc.get("userId")),
            metadata=dict(doc.get("metadata") or {}),
            timestamp=as_utc(doc.get("timestamp")) or utc_now(),
        )
