from __future__ import annotations

from fastapi import APIRouter, Request

from src.sentinel.schemas.jobs import BatchResultOut, MonitoringStatsResponse, SchedulerStatsOut
from src.sentinel.state import get_state

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


@router.get(
    "/stats",
    response_model=MonitoringStatsResponse,
    summary="Background job statistics",
    description="Run counters and last-run results of both sweeps, plus rule engine and cache statistics.",
    operation_id="job_stats",
)
def job_stats(request: Request) -> MonitoringStatsResponse:
    """Return scheduler, engine and cache statistics."""
    state = get_state(request.app)
    return MonitoringStatsResponse(
        background_jobs=SchedulerStatsOut(**state.scheduler.get_stats()),
        rule_engine={
            **state.engine.stats,
            "initialized": state.engine.initialized,
            "policy": state.engine.policy.value,
            "activeRules": len(state.engine.active_rules),
        },
        cache=state.cache.get_stats(),
    )


@router.post(
    "/auto-close/run",
    response_model=BatchResultOut,
    summary="Run auto-close sweep now",
    description="Run the auto-close sweep synchronously, with the same code path as the scheduled run.",
    operation_id="run_auto_close_sweep",
)
async def run_auto_close(request: Request) -> BatchResultOut:
    """Trigger the auto-close sweep."""
    result = await get_state(request.app).scheduler.trigger_auto_close()
    return BatchResultOut(**result.to_dict())


@router.post(
    "/rule-evaluation/run",
    response_model=BatchResultOut,
    summary="Run rule-evaluation sweep now",
    description="Reload rules and evaluate OPEN alerts synchronously, with the same code path as the scheduled run.",
    operation_id="run_rule_evaluation_sweep",
)
async def run_rule_evaluation(request: Request) -> BatchResultOut:
    """Trigger the rule-evaluation sweep."""
    result = await get_state(request.app).scheduler.trigger_rule_evaluation()
    return BatchResultOut(**result.to_dict())
