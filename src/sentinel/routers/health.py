from __future__ import annotations

import re
from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.sentinel.schemas.common import HealthResponse, utc_now
from src.sentinel.state import get_state

router = APIRouter(tags=["Health"])


def _sanitize_mongo_uri_for_response(uri: str) -> str:
    """Mask credentials in mongo URIs to avoid returning secrets to clients."""
    return re.sub(r"(mongodb(?:\+srv)?://)([^:@/]+):([^@/]+)@", r"\1\2:***@", uri)


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_uri_source: str = Field(..., description="Which env var provided the effective MongoDB URI.")
    mongo_uri_sanitized: str = Field(..., description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


class SchedulerConfigResponse(BaseModel):
    """Diagnostics describing sweep cadences and engine tuning."""

    auto_close_schedule: str = Field(..., description="Auto-close sweep schedule expression.")
    auto_close_interval_sec: int = Field(..., description="Nominal auto-close sweep cadence (seconds).")
    rule_evaluation_schedule: str = Field(..., description="Rule-evaluation sweep schedule expression.")
    rule_evaluation_interval_sec: int = Field(..., description="Nominal rule-evaluation sweep cadence (seconds).")
    scheduler_enabled: bool = Field(..., description="Whether the sweeps are started on boot.")
    sweep_batch_size: int = Field(..., description="Max alerts per sweep.")
    rule_cache_ttl_sec: int = Field(..., description="TTL of the cached enabled-rule list.")
    rule_selection_policy: str = Field(..., description="Which same-type rule wins (last_loaded|highest_priority).")
    alert_expiry_days: int = Field(..., description="Expiry horizon applied to new alerts.")
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the backend's configured MongoDB and reports which env var supplied the URI. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend↔Mongo."""
    state = get_state(request.app)
    ok = state.mongo.ping() if state.mongo is not None else False

    return MongoConnectivityResponse(
        ok=ok,
        mongo_uri_source=state.config.mongo_uri_source,
        mongo_uri_sanitized=_sanitize_mongo_uri_for_response(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
        meta={"db": state.config.mongo_db_name},
    )


@router.get(
    "/api/health/scheduler",
    response_model=SchedulerConfigResponse,
    summary="Scheduler configuration diagnostics",
    description="Reports sweep cadences, batch cap, rule cache TTL and rule selection policy (no secrets).",
    operation_id="scheduler_config_diagnostics",
)
def scheduler_config_diagnostics(request: Request) -> SchedulerConfigResponse:
    """Return scheduler/engine configuration diagnostics."""
    cfg = get_state(request.app).config
    return SchedulerConfigResponse(
        auto_close_schedule=cfg.auto_close_schedule,
        auto_close_interval_sec=int(cfg.auto_close_interval_sec),
        rule_evaluation_schedule=cfg.rule_evaluation_schedule,
        rule_evaluation_interval_sec=int(cfg.rule_evaluation_interval_sec),
        scheduler_enabled=bool(cfg.scheduler_enabled),
        sweep_batch_size=int(cfg.sweep_batch_size),
        rule_cache_ttl_sec=int(cfg.rule_cache_ttl_sec),
        rule_selection_policy=cfg.rule_selection_policy,
        alert_expiry_days=int(cfg.alert_expiry_days),
        timestamp=utc_now().isoformat(),
    )
