from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.sentinel.schemas.common import Severity, SourceType


class RuleConditionsModel(BaseModel):
    """Rule conditions; every field is optional and evaluated independently."""

    escalate_if_count: Optional[int] = Field(
        default=None, ge=1, description="Escalate when this many active alerts exist in the window."
    )
    window_mins: Optional[int] = Field(default=None, ge=1, description="Escalation counting window (minutes).")
    auto_close_if: Optional[str] = Field(
        default=None,
        description="Predicate name: document_valid | speed_normalized | feedback_improved | any boolean metadata key.",
    )
    auto_close_after_mins: Optional[int] = Field(default=None, ge=1, description="Auto-close once alert age reaches this.")
    custom_conditions: Optional[Dict[str, Any]] = Field(default=None, description="Opaque operator data.")


class RuleActionsModel(BaseModel):
    """Actions consumed by external notifiers."""

    model_config = ConfigDict(populate_by_name=True)

    escalate_to_severity: Optional[Severity] = Field(default=None)
    notify: bool = Field(False)
    notification_channels: List[str] = Field(default_factory=list, alias="notificationChannels")


class RuleBase(BaseModel):
    """Common fields for a rule."""

    model_config = ConfigDict(populate_by_name=True)

    source_type: SourceType = Field(..., description="Source type this rule applies to.", alias="sourceType")
    name: str = Field(..., description="Human-friendly rule name.")
    description: Optional[str] = Field(default=None)
    enabled: bool = Field(True, description="Whether the rule is loaded by the engine.")
    priority: int = Field(0, description="Higher is more important.")
    conditions: RuleConditionsModel = Field(default_factory=RuleConditionsModel)
    actions: RuleActionsModel = Field(default_factory=RuleActionsModel)


class RuleCreate(RuleBase):
    """Request model for creating a rule."""

    rule_id: str = Field(..., min_length=1, description="Unique rule id.", alias="ruleId")
    created_by: Optional[str] = Field(default=None, alias="createdBy")


class RuleUpdate(BaseModel):
    """Partial update; conditions/actions are merged key by key into the existing ones."""

    name: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    enabled: Optional[bool] = Field(default=None)
    priority: Optional[int] = Field(default=None)
    conditions: Optional[Dict[str, Any]] = Field(default=None)
    actions: Optional[Dict[str, Any]] = Field(default=None)


class RuleOut(RuleBase):
    """Response model for a rule."""

    rule_id: str = Field(..., alias="ruleId")
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class RuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[RuleOut] = Field(..., description="Rules ordered by priority descending.")
    total: int = Field(..., ge=0)
