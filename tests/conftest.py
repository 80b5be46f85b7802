from __future__ import annotations

import os
from collections.abc import AsyncIterator
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

import httpx
import pytest

# src.sentinel.main builds a module-level app from env; the Mongo client it wires is lazy
# and never connects in these tests.
os.environ.setdefault("SENTINEL_MONGO_URI", "mongodb://localhost:27017")

from src.sentinel.config import BackendConfig  # noqa: E402
from src.sentinel.models import Alert, HistoryEntry, Rule, RuleActions, RuleConditions  # noqa: E402
from src.sentinel.schemas.common import (  # noqa: E402
    ACTIVE_STATUSES,
    AlertStatus,
    Severity,
    SourceType,
    TriggerActor,
    utc_now,
)
from src.sentinel.state import AppState, build_state  # noqa: E402

# Mirrors the Mongo store's $set of lifecycle fields.
LIFECYCLE_ATTRS = (
    "status",
    "severity",
    "escalated_at",
    "auto_closed_at",
    "resolved_at",
    "closure_reason",
    "resolved_by",
    "notes",
    "updated_at",
)


class InMemoryAlertStore:
    """AlertStore over a dict, with optional simulated write failures per alertId."""

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self.fail_save_for: Set[str] = set()
        self.fail_find = False
        self.count_calls = 0

    def add(self, alert: Alert) -> Alert:
        alert.id = alert.id or uuid4().hex
        alert.created_at = alert.created_at or utc_now()
        self._alerts[alert.alert_id] = deepcopy(alert)
        return alert

    def stored(self, alert_id: str) -> Alert:
        return deepcopy(self._alerts[alert_id])

    async def find_active(
        self,
        statuses: Iterable[AlertStatus],
        *,
        source_type: Optional[SourceType] = None,
        driver_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        oldest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        if self.fail_find:
            raise RuntimeError("simulated query failure")
        now = utc_now()
        wanted = set(statuses)
        items = [
            a
            for a in self._alerts.values()
            if a.status in wanted
            and not a.is_expired(now)
            and (source_type is None or a.source_type == source_type)
            and (driver_id is None or a.driver_id == driver_id)
            and (since is None or a.timestamp >= since)
            and (until is None or a.timestamp <= until)
        ]
        if oldest_first:
            items.sort(key=lambda a: a.timestamp)
        if limit:
            items = items[:limit]
        return [deepcopy(a) for a in items]

    async def count_active(
        self, source_type: SourceType, driver_id: Optional[str], since: datetime, until: datetime
    ) -> int:
        self.count_calls += 1
        now = utc_now()
        return sum(
            1
            for a in self._alerts.values()
            if a.status in ACTIVE_STATUSES
            and a.source_type == source_type
            and a.driver_id == driver_id
            and since <= a.timestamp <= until
            and not a.is_expired(now)
        )

    async def insert(self, alert: Alert) -> Alert:
        now = utc_now()
        alert.id = uuid4().hex
        alert.created_at = alert.created_at or now
        alert.updated_at = now
        self._alerts[alert.alert_id] = deepcopy(alert)
        return alert

    async def save_guarded(
        self, alert: Alert, expected_status: AlertStatus, *, include_metadata: bool = False
    ) -> bool:
        if alert.alert_id in self.fail_save_for:
            raise RuntimeError(f"simulated write failure for {alert.alert_id}")
        current = self._alerts.get(alert.alert_id)
        if current is None or current.status != expected_status:
            return False
        alert.updated_at = utc_now()
        for name in LIFECYCLE_ATTRS:
            setattr(current, name, deepcopy(getattr(alert, name)))
        if include_metadata:
            current.metadata = deepcopy(alert.metadata)
        return True

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return deepcopy(alert) if alert else None

    async def list_alerts(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[str] = None,
        source_type: Optional[SourceType] = None,
        driver_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
        sort_by: str = "timestamp",
        descending: bool = True,
    ) -> Tuple[List[Alert], int]:
        items = [
            a
            for a in self._alerts.values()
            if (status is None or a.status == status)
            and (severity is None or a.severity.value == severity)
            and (source_type is None or a.source_type == source_type)
            and (driver_id is None or a.driver_id == driver_id)
        ]
        items.sort(key=lambda a: a.timestamp, reverse=descending)
        return [deepcopy(a) for a in items[skip : skip + limit]], len(items)

    async def delete(self, alert_id: str) -> bool:
        return self._alerts.pop(alert_id, None) is not None


class InMemoryRuleStore:
    """RuleStore over a dict; fail_loads makes find_enabled raise."""

    def __init__(self) -> None:
        self._rules: Dict[str, Rule] = {}
        self.fail_loads = False
        self.load_calls = 0

    def add(self, rule: Rule) -> Rule:
        self._rules[rule.rule_id] = deepcopy(rule)
        return rule

    def _sorted(self, rules: Iterable[Rule]) -> List[Rule]:
        return [deepcopy(r) for r in sorted(rules, key=lambda r: -r.priority)]

    async def find_enabled(self, source_type: Optional[SourceType] = None) -> List[Rule]:
        self.load_calls += 1
        if self.fail_loads:
            raise RuntimeError("simulated rule store outage")
        return self._sorted(
            r for r in self._rules.values() if r.enabled and (source_type is None or r.source_type == source_type)
        )

    async def list_rules(
        self, source_type: Optional[SourceType] = None, enabled: Optional[bool] = None
    ) -> List[Rule]:
        return self._sorted(
            r
            for r in self._rules.values()
            if (source_type is None or r.source_type == source_type) and (enabled is None or r.enabled == enabled)
        )

    async def get(self, rule_id: str) -> Optional[Rule]:
        rule = self._rules.get(rule_id)
        return deepcopy(rule) if rule else None

    async def insert(self, rule: Rule) -> Rule:
        self._rules[rule.rule_id] = deepcopy(rule)
        return rule

    async def replace(self, rule: Rule) -> bool:
        if rule.rule_id not in self._rules:
            return False
        self._rules[rule.rule_id] = deepcopy(rule)
        return True

    async def delete(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None


class InMemoryHistoryLog:
    """Append-only list of HistoryEntry."""

    def __init__(self) -> None:
        self.entries: List[HistoryEntry] = []

    async def append(
        self,
        alert_id: str,
        alert_ref: Optional[str],
        from_status: Optional[AlertStatus],
        to_status: AlertStatus,
        reason: Optional[str],
        actor: TriggerActor,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            alert_id=alert_id,
            alert_ref=alert_ref,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            triggered_by=actor,
            user_id=user_id,
            metadata=dict(metadata or {}),
        )
        self.entries.append(entry)
        return entry

    async def for_alert(self, alert_id: str) -> List[HistoryEntry]:
        return [e for e in reversed(self.entries) if e.alert_id == alert_id]

    def transitions(self, alert_id: str) -> List[Tuple[Optional[AlertStatus], AlertStatus]]:
        return [(e.from_status, e.to_status) for e in self.entries if e.alert_id == alert_id]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config() -> BackendConfig:
    """Deterministic config (no env lookups)."""
    return BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="sentinel_test",
        auto_close_schedule="*/5 * * * *",
        auto_close_interval_sec=300,
        rule_evaluation_schedule="*/2 * * * *",
        rule_evaluation_interval_sec=120,
        scheduler_enabled=False,
        sweep_batch_size=100,
        rule_cache_ttl_sec=300,
        rule_selection_policy="last_loaded",
        alert_expiry_days=30,
        alert_list_cache_ttl_sec=60,
        mongo_uri_source="SENTINEL_MONGO_URI",
    )


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture
def history_log() -> InMemoryHistoryLog:
    return InMemoryHistoryLog()


@pytest.fixture
def app_state(
    config: BackendConfig,
    alert_store: InMemoryAlertStore,
    rule_store: InMemoryRuleStore,
    history_log: InMemoryHistoryLog,
) -> AppState:
    return build_state(config, alert_store, rule_store, history_log)


@pytest.fixture
def engine(app_state: AppState):
    return app_state.engine


@pytest.fixture
def scheduler(app_state: AppState):
    return app_state.scheduler


@pytest.fixture
def make_alert(alert_store: InMemoryAlertStore) -> Callable[..., Alert]:
    """Build an alert and store it (store=False to keep it unsaved)."""
    counter = {"n": 0}

    def _make(
        source_type: SourceType = SourceType.overspeed,
        *,
        driver_id: Optional[str] = "D1",
        minutes_ago: float = 0,
        status: AlertStatus = AlertStatus.open,
        severity: Severity = Severity.warning,
        metadata: Optional[Dict[str, Any]] = None,
        expires_in_days: Optional[float] = 30,
        store: bool = True,
    ) -> Alert:
        counter["n"] += 1
        meta = {"driverId": driver_id} if driver_id is not None else {}
        meta.update(metadata or {})
        now = utc_now()
        alert = Alert(
            alert_id=f"ALT-TEST-{counter['n']}",
            source_type=source_type,
            severity=severity,
            status=status,
            timestamp=now - timedelta(minutes=minutes_ago),
            metadata=meta,
            expires_at=(now + timedelta(days=expires_in_days)) if expires_in_days is not None else None,
        )
        if store:
            alert_store.add(alert)
        return alert

    return _make


@pytest.fixture
def seed_rule(rule_store: InMemoryRuleStore) -> Callable[..., Rule]:
    """Insert a rule directly into the rule store."""

    def _seed(
        rule_id: str,
        source_type: SourceType = SourceType.overspeed,
        *,
        priority: int = 0,
        enabled: bool = True,
        escalate_if_count: Optional[int] = None,
        window_mins: Optional[int] = None,
        auto_close_if: Optional[str] = None,
        auto_close_after_mins: Optional[int] = None,
    ) -> Rule:
        rule = Rule(
            rule_id=rule_id,
            source_type=source_type,
            name=f"Rule {rule_id}",
            enabled=enabled,
            priority=priority,
            conditions=RuleConditions(
                escalate_if_count=escalate_if_count,
                window_mins=window_mins,
                auto_close_if=auto_close_if,
                auto_close_after_mins=auto_close_after_mins,
            ),
            actions=RuleActions(escalate_to_severity=Severity.critical, notify=True, notification_channels=["email"]),
        )
        return rule_store.add(rule)

    return _seed


@pytest.fixture
def app(app_state: AppState):
    """FastAPI app wired to the in-memory stores (startup hooks are not run by ASGITransport)."""
    from src.sentinel.main import create_app

    return create_app(app_state)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
