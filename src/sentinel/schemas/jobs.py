from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchResultOut(BaseModel):
    """Counters from one sweep or batch."""

    model_config = ConfigDict(populate_by_name=True)

    processed: int = Field(..., ge=0)
    escalated: int = Field(..., ge=0)
    auto_closed: int = Field(..., ge=0, alias="autoClosed")
    errors: int = Field(..., ge=0)


class SchedulerStatsOut(BaseModel):
    """Background job counters and schedule."""

    model_config = ConfigDict(populate_by_name=True)

    auto_close_runs: int = Field(..., alias="autoCloseRuns")
    rule_evaluation_runs: int = Field(..., alias="ruleEvaluationRuns")
    last_auto_close_run: Optional[datetime] = Field(default=None, alias="lastAutoCloseRun")
    last_rule_evaluation_run: Optional[datetime] = Field(default=None, alias="lastRuleEvaluationRun")
    last_auto_close_result: Optional[BatchResultOut] = Field(default=None, alias="lastAutoCloseResult")
    last_rule_evaluation_result: Optional[BatchResultOut] = Field(default=None, alias="lastRuleEvaluationResult")
    is_running: bool = Field(..., alias="isRunning")
    active_jobs: int = Field(..., alias="activeJobs")
    auto_close_schedule: str = Field(..., alias="autoCloseSchedule")
    auto_close_interval_sec: int = Field(..., alias="autoCloseIntervalSec")
    rule_evaluation_schedule: str = Field(..., alias="ruleEvaluationSchedule")
    rule_evaluation_interval_sec: int = Field(..., alias="ruleEvaluationIntervalSec")
    batch_size: int = Field(..., alias="batchSize")


class MonitoringStatsResponse(BaseModel):
    """Scheduler, engine and cache statistics."""

    model_config = ConfigDict(populate_by_name=True)

    background_jobs: SchedulerStatsOut = Field(..., alias="backgroundJobs")
    rule_engine: Dict[str, Any] = Field(default_factory=dict, alias="ruleEngine")
    cache: Dict[str, Any] = Field(default_factory=dict)
