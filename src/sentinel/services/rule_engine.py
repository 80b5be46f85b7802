from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from src.sentinel.db.repositories import AlertStore, HistoryLog, RuleStore, StaleAlertError
from src.sentinel.models import Alert, Rule
from src.sentinel.schemas.common import ACTIVE_STATUSES, AlertStatus, SourceType, TriggerActor, as_utc, utc_now
from src.sentinel.services.cache import CacheManager

logger = logging.getLogger(__name__)

RULES_CACHE_KEY = "rules:all"


class RuleSelectionPolicy(str, Enum):
    """
    Which rule is kept when several enabled rules share a source type.

    last_loaded: rules are indexed in priority-descending order and each insert overwrites
    the previous one, so the LOWEST-priority rule ends up active. This is the historical
    behavior and the default.
    highest_priority: the highest-priority rule is kept.
    """

    last_loaded = "last_loaded"
    highest_priority = "highest_priority"


@dataclass
class Evaluation:
    """
    Decision for one alert.

    should_escalate and should_auto_close are independent; both may be True. reason holds
    the last reason written (auto-close reasons overwrite the escalation reason).
    """

    should_escalate: bool = False
    should_auto_close: bool = False
    reason: Optional[str] = None
    rule: Optional[Rule] = None

    @property
    def rule_id(self) -> Optional[str]:
        return self.rule.rule_id if self.rule else None


@dataclass
class ProcessResult:
    """Outcome of evaluate + apply for one alert."""

    success: bool
    modified: bool = False
    evaluation: Optional[Evaluation] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Counters accumulated over a batch of alerts."""

    processed: int = 0
    escalated: int = 0
    auto_closed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "escalated": self.escalated,
            "autoClosed": self.auto_closed,
            "errors": self.errors,
        }


# PUBLIC_INTERFACE
def build_rule_index(rules: Iterable[Rule], policy: RuleSelectionPolicy) -> Dict[SourceType, Rule]:
    """Map source type -> rule from a priority-descending rule list."""
    index: Dict[SourceType, Rule] = {}
    for rule in rules:
        existing = index.get(rule.source_type)
        if (
            policy == RuleSelectionPolicy.highest_priority
            and existing is not None
            and existing.priority >= rule.priority
        ):
            continue
        index[rule.source_type] = rule
    return index


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _le(a: Any, b: Any) -> bool:
    try:
        return a is not None and b is not None and float(a) <= float(b)
    except (TypeError, ValueError):
        return False


def _ge(a: Any, b: float) -> bool:
    try:
        return a is not None and float(a) >= b
    except (TypeError, ValueError):
        return False


# PUBLIC_INTERFACE
def evaluate_close_condition(condition: str, metadata: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
    """
    Evaluate a named auto-close predicate against alert metadata.

    Known predicates: document_valid, speed_normalized, feedback_improved. Any other name
    is looked up in metadata and is true only when that field is boolean True. Missing or
    malformed fields evaluate to False.
    """
    if condition == "document_valid":
        if metadata.get("documentValid") is True:
            return True
        expiry = _parse_datetime(metadata.get("expiryDate"))
        return expiry is not None and expiry > (now or utc_now())

    if condition == "speed_normalized":
        return _le(metadata.get("speed"), metadata.get("speedLimit"))

    if condition == "feedback_improved":
        return _ge(metadata.get("feedbackRating"), 3)

    return metadata.get(condition) is True


class RuleEngine:
    """
    Long-lived service holding the active rule index.

    The index is rebuilt off to the side and swapped in with one assignment, so concurrent
    evaluations see either the old or the new rule set.
    """

    def __init__(
        self,
        alerts: AlertStore,
        rules: RuleStore,
        history: HistoryLog,
        cache: CacheManager,
        *,
        rule_cache_ttl_sec: int = 300,
        policy: RuleSelectionPolicy = RuleSelectionPolicy.last_loaded,
    ) -> None:
        self._alerts = alerts
        self._rules = rules
        self._history = history
        self._cache = cache
        self._rule_cache_ttl = int(rule_cache_ttl_sec)
        self.policy = RuleSelectionPolicy(policy)

        self._index: Dict[SourceType, Rule] = {}
        self.initialized = False
        self.stats: Dict[str, int] = {
            "reloads": 0,
            "evaluations": 0,
            "escalations": 0,
            "auto_closures": 0,
            "errors": 0,
            "conflicts": 0,
        }

    @property
    def active_rules(self) -> List[Rule]:
        return list(self._index.values())

    # PUBLIC_INTERFACE
    async def initialize(self) -> None:
        """Load enabled rules (cache first) and swap in a fresh index. Load failures propagate."""
        try:
            async def _fetch() -> List[Rule]:
                return list(await self._rules.find_enabled())

            rules = await self._cache.get_or_set(RULES_CACHE_KEY, _fetch, self._rule_cache_ttl)

            index = build_rule_index(rules, self.policy)
            self._index = index
            self.initialized = True
            self.stats["reloads"] += 1
            logger.info("Rule engine initialized with %d active rules (policy=%s)", len(index), self.policy.value)
        except Exception:
            logger.exception("Failed to initialize rule engine")
            raise

    # PUBLIC_INTERFACE
    async def reload_rules(self) -> None:
        """Drop the cached rule list and rebuild the index from the rule store."""
        self._cache.delete(RULES_CACHE_KEY)
        await self.initialize()

    def get_rule(self, source_type: SourceType) -> Optional[Rule]:
        return self._index.get(source_type)

    # PUBLIC_INTERFACE
    async def evaluate(self, alert: Alert, now: Optional[datetime] = None) -> Evaluation:
        """Decide whether an alert should escalate and/or auto-close. Does not mutate the alert."""
        if not self.initialized:
            await self.initialize()

        rule = self.get_rule(alert.source_type)
        if rule is None or not rule.enabled:
            logger.debug("No active rule found for %s", alert.source_type.value)
            return Evaluation()

        self.stats["evaluations"] += 1
        now = now or utc_now()
        cond = rule.conditions
        evaluation = Evaluation(rule=rule)

        if cond.escalate_if_count and cond.window_mins:
            window_start = now - timedelta(minutes=cond.window_mins)
            count = await self._alerts.count_active(alert.source_type, alert.driver_id, window_start, now)
            if count >= cond.escalate_if_count:
                evaluation.should_escalate = True
                evaluation.reason = (
                    f"{count} {alert.source_type.value} alerts detected within {cond.window_mins} minutes"
                )
                logger.info("Alert %s meets escalation criteria: %s", alert.alert_id, evaluation.reason)

        if cond.auto_close_if and alert.metadata:
            if evaluate_close_condition(cond.auto_close_if, alert.metadata, now):
                evaluation.should_auto_close = True
                evaluation.reason = f"Condition met: {cond.auto_close_if}"
                logger.info("Alert %s meets auto-close criteria: %s", alert.alert_id, evaluation.reason)

        if cond.auto_close_after_mins:
            if alert.age_minutes(now) >= cond.auto_close_after_mins:
                evaluation.should_auto_close = True
                evaluation.reason = f"Alert aged beyond {cond.auto_close_after_mins} minutes"

        return evaluation

    async def _save_transition(self, alert: Alert, old_status: AlertStatus) -> None:
        # Only written if nobody moved the stored alert away from old_status meanwhile.
        if not await self._alerts.save_guarded(alert, old_status):
            raise StaleAlertError(
                f"alert {alert.alert_id} is no longer {old_status.value}; {alert.status.value} not applied"
            )

    # PUBLIC_INTERFACE
    async def apply(
        self, alert: Alert, evaluation: Evaluation, actor: TriggerActor = TriggerActor.rule_engine
    ) -> bool:
        """
        Apply an evaluation: escalate (OPEN only), then auto-close (OPEN/ESCALATED).

        Each transition taken is saved and logged with exactly one history entry. When both
        flags are set the alert is escalated and immediately auto-closed in the same call.
        Raises StaleAlertError (before any history is written for that transition) when the
        stored alert changed status after it was loaded.
        """
        modified = False
        history_meta = {"rule": evaluation.rule_id}

        if evaluation.should_escalate and alert.status == AlertStatus.open:
            old_status = alert.status
            alert.escalate(evaluation.reason)
            await self._save_transition(alert, old_status)
            await self._history.append(
                alert.alert_id,
                alert.id,
                old_status,
                AlertStatus.escalated,
                evaluation.reason,
                actor,
                None,
                history_meta,
            )
            modified = True
            self.stats["escalations"] += 1
            logger.info("Alert %s escalated by rule engine", alert.alert_id)

        if evaluation.should_auto_close and alert.status in ACTIVE_STATUSES:
            old_status = alert.status
            alert.auto_close(evaluation.reason)
            await self._save_transition(alert, old_status)
            await self._history.append(
                alert.alert_id,
                alert.id,
                old_status,
                AlertStatus.auto_closed,
                evaluation.reason,
                actor,
                None,
                history_meta,
            )
            modified = True
            self.stats["auto_closures"] += 1
            logger.info("Alert %s auto-closed by rule engine", alert.alert_id)

        return modified

    # PUBLIC_INTERFACE
    async def process_alert(
        self, alert: Alert, actor: TriggerActor = TriggerActor.rule_engine
    ) -> ProcessResult:
        """Evaluate and apply for one alert; any failure is logged and reported, never raised."""
        try:
            evaluation = await self.evaluate(alert)
            modified = await self.apply(alert, evaluation, actor=actor)
            return ProcessResult(success=True, modified=modified, evaluation=evaluation)
        except StaleAlertError as exc:
            self.stats["conflicts"] += 1
            logger.warning("Skipped alert %s: %s", alert.alert_id, exc)
            return ProcessResult(success=False, error=str(exc))
        except Exception as exc:
            self.stats["errors"] += 1
            logger.exception("Error processing alert %s", alert.alert_id)
            return ProcessResult(success=False, error=str(exc))

    # PUBLIC_INTERFACE
    async def process_batch(
        self, alerts: Iterable[Alert], actor: TriggerActor = TriggerActor.rule_engine
    ) -> BatchResult:
        """Process alerts in order; one alert's failure is counted and does not stop the batch."""
        results = BatchResult()
        for alert in alerts:
            try:
                result = await self.process_alert(alert, actor=actor)
                if result.success:
                    results.processed += 1
                    if result.modified:
                        if alert.status == AlertStatus.escalated:
                            results.escalated += 1
                        if alert.status == AlertStatus.auto_closed:
                            results.auto_closed += 1
                else:
                    results.errors += 1
            except Exception:
                logger.exception("Error in batch processing")
                results.errors += 1
        return results
