from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.sentinel.config import parse_schedule_interval, seconds_until_next_run
from src.sentinel.db.repositories import AlertStore
from src.sentinel.schemas.common import ACTIVE_STATUSES, AlertStatus, TriggerActor, utc_now
from src.sentinel.services.cache import CacheManager
from src.sentinel.services.rule_engine import BatchResult, RuleEngine

logger = logging.getLogger(__name__)

VIEW_CACHE_PREFIXES = ("dashboard:", "alerts:")


class BatchScheduler:
    """
    Runs the auto-close and rule-evaluation sweeps on independent schedules.

    A schedule is a fixed interval ('90s', '5m') or a 5-field cron expression; each loop sleeps
    until the schedule's next fire time. Scheduled runs and manual triggers go through the same
    run_* coroutines. A failing run is logged and reported through its returned BatchResult; the
    loop keeps its schedule. Assumes a single scheduler instance per deployment.
    """

    def __init__(
        self,
        engine: RuleEngine,
        alerts: AlertStore,
        cache: CacheManager,
        *,
        auto_close_schedule: str = "*/5 * * * *",
        rule_evaluation_schedule: str = "*/2 * * * *",
        batch_size: int = 100,
    ) -> None:
        # Fail fast on unusable expressions.
        parse_schedule_interval(auto_close_schedule)
        parse_schedule_interval(rule_evaluation_schedule)

        self._engine = engine
        self._alerts = alerts
        self._cache = cache
        self.auto_close_schedule = auto_close_schedule
        self.rule_evaluation_schedule = rule_evaluation_schedule
        self.batch_size = max(1, int(batch_size))

        self._tasks: List[asyncio.Task] = []
        self._shutdown: Optional[asyncio.Event] = None
        self.is_running = False
        self.stats: Dict[str, Any] = {
            "autoCloseRuns": 0,
            "ruleEvaluationRuns": 0,
            "lastAutoCloseRun": None,
            "lastRuleEvaluationRun": None,
            "lastAutoCloseResult": None,
            "lastRuleEvaluationResult": None,
        }

    # PUBLIC_INTERFACE
    def start(self) -> None:
        """Spawn both sweep loops on the running event loop."""
        if self.is_running:
            logger.warning("Background jobs already running")
            return

        self._shutdown = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._loop("Auto-close", self.auto_close_schedule, self.run_auto_close_sweep, self._shutdown)
            ),
            asyncio.create_task(
                self._loop(
                    "Rule evaluation",
                    self.rule_evaluation_schedule,
                    self.run_rule_evaluation_sweep,
                    self._shutdown,
                )
            ),
        ]
        self.is_running = True
        logger.info("Background jobs started successfully")

    # PUBLIC_INTERFACE
    async def stop(self) -> None:
        """Signal both loops to exit and wait for them."""
        if self._shutdown is not None:
            self._shutdown.set()
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping background job task")
        self._tasks = []
        self._shutdown = None
        self.is_running = False
        logger.info("Background jobs stopped")

    async def _loop(
        self,
        name: str,
        schedule: str,
        sweep: Callable[[], Awaitable[BatchResult]],
        shutdown_event: asyncio.Event,
    ) -> None:
        logger.info("%s job scheduled (schedule=%r)", name, schedule)
        while not shutdown_event.is_set():
            delay = seconds_until_next_run(schedule, utc_now())
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await sweep()
            except Exception:
                logger.exception("%s job run failed", name)

        logger.info("%s job stopped", name)

    def _invalidate_views(self) -> None:
        for prefix in VIEW_CACHE_PREFIXES:
            self._cache.invalidate_pattern(prefix)

    # PUBLIC_INTERFACE
    async def run_auto_close_sweep(self) -> BatchResult:
        """Evaluate up to batch_size unexpired OPEN/ESCALATED alerts for closure or escalation."""
        started = time.monotonic()
        logger.info("Starting auto-close job")
        results = BatchResult()
        try:
            alerts = await self._alerts.find_active(ACTIVE_STATUSES, limit=self.batch_size)
            if not alerts:
                logger.info("No alerts to process in auto-close job")
            else:
                logger.info("Processing %d alerts in auto-close job", len(alerts))
                results = await self._engine.process_batch(alerts, actor=TriggerActor.auto_close_job)
            self._invalidate_views()
        except Exception:
            logger.exception("Error in auto-close job")
            results.errors += 1
        finally:
            self.stats["autoCloseRuns"] += 1
            self.stats["lastAutoCloseRun"] = utc_now()
            self.stats["lastAutoCloseResult"] = results.to_dict()

        logger.info(
            "Auto-close job completed in %dms (run #%d): %s",
            int((time.monotonic() - started) * 1000),
            self.stats["autoCloseRuns"],
            results.to_dict(),
        )
        return results

    # PUBLIC_INTERFACE
    async def run_rule_evaluation_sweep(self) -> BatchResult:
        """Reload rules, then evaluate up to batch_size unexpired OPEN alerts, oldest first."""
        started = time.monotonic()
        logger.info("Starting rule evaluation job")
        results = BatchResult()
        try:
            await self._engine.reload_rules()

            alerts = await self._alerts.find_active(
                [AlertStatus.open], oldest_first=True, limit=self.batch_size
            )
            if not alerts:
                logger.info("No alerts to evaluate in rule evaluation job")
            else:
                logger.info("Evaluating %d alerts in rule evaluation job", len(alerts))
                results = await self._engine.process_batch(alerts, actor=TriggerActor.rule_engine)
            self._invalidate_views()
        except Exception:
            logger.exception("Error in rule evaluation job")
            results.errors += 1
        finally:
            self.stats["ruleEvaluationRuns"] += 1
            self.stats["lastRuleEvaluationRun"] = utc_now()
            self.stats["lastRuleEvaluationResult"] = results.to_dict()

        logger.info(
            "Rule evaluation job completed in %dms (run #%d): %s",
            int((time.monotonic() - started) * 1000),
            self.stats["ruleEvaluationRuns"],
            results.to_dict(),
        )
        return results

    async def trigger_auto_close(self) -> BatchResult:
        logger.info("Manually triggering auto-close job")
        return await self.run_auto_close_sweep()

    async def trigger_rule_evaluation(self) -> BatchResult:
        logger.info("Manually triggering rule evaluation job")
        return await self.run_rule_evaluation_sweep()

    # PUBLIC_INTERFACE
    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "isRunning": self.is_running,
            "activeJobs": len(self._tasks),
            "autoCloseSchedule": self.auto_close_schedule,
            "autoCloseIntervalSec": parse_schedule_interval(self.auto_close_schedule),
            "ruleEvaluationSchedule": self.rule_evaluation_schedule,
            "ruleEvaluationIntervalSec": parse_schedule_interval(self.rule_evaluation_schedule),
            "batchSize": self.batch_size,
        }
