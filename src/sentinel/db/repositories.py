from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from src.sentinel.db.mongo import MongoManager
from src.sentinel.models import Alert, HistoryEntry, Rule
from src.sentinel.schemas.common import ACTIVE_STATUSES, AlertStatus, SourceType, TriggerActor, utc_now

logger = logging.getLogger(__name__)

ALERT_SORT_FIELDS = ("timestamp", "severity", "status", "sourceType", "createdAt", "updatedAt")

# Fields written by a guarded save; metadata only when explicitly requested.
ALERT_LIFECYCLE_FIELDS = (
    "status",
    "severity",
    "escalatedAt",
    "autoClosedAt",
    "resolvedAt",
    "closureReason",
    "resolvedBy",
    "notes",
    "updatedAt",
)


class StaleAlertError(RuntimeError):
    """Raised when an alert's stored status changed after it was loaded."""


class AlertStore(Protocol):
    """Persistence contract the rule engine and scheduler need for alerts."""

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
        """Alerts in the given statuses whose expiry is unset or in the future."""
        ...

    async def count_active(
        self, source_type: SourceType, driver_id: Optional[str], since: datetime, until: datetime
    ) -> int:
        """Count OPEN/ESCALATED, unexpired alerts of a type for a driver with timestamp in [since, until]."""
        ...

    async def insert(self, alert: Alert) -> Alert:
        """Persist a new alert and assign its id."""
        ...

    async def save_guarded(
        self, alert: Alert, expected_status: AlertStatus, *, include_metadata: bool = False
    ) -> bool:
        """
        Write the alert's lifecycle fields only if the stored status still equals expected_status.

        Returns False when the stored alert moved on (or is gone); nothing is written then.
        """
        ...

    async def get(self, alert_id: str) -> Optional[Alert]:
        ...

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
        ...

    async def delete(self, alert_id: str) -> bool:
        ...


class RuleStore(Protocol):
    """Persistence contract for operator-owned rules."""

    async def find_enabled(self, source_type: Optional[SourceType] = None) -> List[Rule]:
        """Enabled rules ordered by priority descending."""
        ...

    async def list_rules(
        self, source_type: Optional[SourceType] = None, enabled: Optional[bool] = None
    ) -> List[Rule]:
        ...

    async def get(self, rule_id: str) -> Optional[Rule]:
        ...

    async def insert(self, rule: Rule) -> Rule:
        ...

    async def replace(self, rule: Rule) -> bool:
        ...

    async def delete(self, rule_id: str) -> bool:
        ...


class HistoryLog(Protocol):
    """Append-only audit sink for alert status transitions."""

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
        ...

    async def for_alert(self, alert_id: str) -> List[HistoryEntry]:
        """Entries for one alert, newest first."""
        ...


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _not_expired_clause(now: datetime) -> Dict[str, Any]:
    # {expiresAt: None} also matches documents without the field.
    return {"$or": [{"expiresAt": None}, {"expiresAt": {"$gt": now}}]}


def _to_oid(value: Optional[str]) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class MongoAlertStore:
    """AlertStore backed by the `alerts` collection."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def _col(self):
        return self._mongo.collections().alerts

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
        query: Dict[str, Any] = {"status": {"$in": [s.value for s in statuses]}}
        query.update(_not_expired_clause(utc_now()))
        if source_type is not None:
            query["sourceType"] = source_type.value
        if driver_id is not None:
            query["metadata.driverId"] = driver_id
        if since or until:
            ts: Dict[str, Any] = {}
            if since:
                ts["$gte"] = since
            if until:
                ts["$lte"] = until
            query["timestamp"] = ts

        def _find() -> List[dict]:
            cursor = self._col().find(query)
            if oldest_first:
                cursor = cursor.sort("timestamp", 1)
            if limit:
                cursor = cursor.limit(int(limit))
            return list(cursor)

        docs = await _run_in_thread(_find)
        return [Alert.from_doc(d) for d in docs]

    async def count_active(
        self, source_type: SourceType, driver_id: Optional[str], since: datetime, until: datetime
    ) -> int:
        query: Dict[str, Any] = {
            "sourceType": source_type.value,
            "metadata.driverId": driver_id,
            "timestamp": {"$gte": since, "$lte": until},
            "status": {"$in": [s.value for s in ACTIVE_STATUSES]},
        }
        query.update(_not_expired_clause(utc_now()))
        return int(await _run_in_thread(self._col().count_documents, query))

    async def insert(self, alert: Alert) -> Alert:
        now = utc_now()
        alert.created_at = alert.created_at or now
        alert.updated_at = now
        res = await _run_in_thread(self._col().insert_one, alert.to_doc())
        alert.id = str(res.inserted_id)
        return alert

    async def save_guarded(
        self, alert: Alert, expected_status: AlertStatus, *, include_metadata: bool = False
    ) -> bool:
        oid = _to_oid(alert.id)
        if oid is None:
            raise ValueError(f"alert {alert.alert_id} has an invalid persistent id {alert.id!r}")

        alert.updated_at = utc_now()
        doc = alert.to_doc()
        fields = {k: doc[k] for k in ALERT_LIFECYCLE_FIELDS}
        if include_metadata:
            fields["metadata"] = doc["metadata"]

        res = await _run_in_thread(
            self._col().update_one, {"_id": oid, "status": expected_status.value}, {"$set": fields}
        )
        return res.matched_count > 0

    async def get(self, alert_id: str) -> Optional[Alert]:
        doc = await _run_in_thread(self._col().find_one, {"alertId": alert_id})
        return Alert.from_doc(doc) if doc else None

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
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = status.value
        if severity:
            query["severity"] = severity
        if source_type is not None:
            query["sourceType"] = source_type.value
        if driver_id:
            query["metadata.driverId"] = driver_id
        sort_field = sort_by if sort_by in ALERT_SORT_FIELDS else "timestamp"

        def _page() -> Tuple[List[dict], int]:
            col = self._col()
            total = int(col.count_documents(query))
            docs = list(
                col.find(query).sort(sort_field, -1 if descending else 1).skip(int(skip)).limit(int(limit))
            )
            return docs, total

        docs, total = await _run_in_thread(_page)
        return [Alert.from_doc(d) for d in docs], total

    async def delete(self, alert_id: str) -> bool:
        res = await _run_in_thread(self._col().delete_one, {"alertId": alert_id})
        return res.deleted_count > 0


class MongoRuleStore:
    """RuleStore backed by the `rules` collection."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def _col(self):
        return self._mongo.collections().rules

    async def find_enabled(self, source_type: Optional[SourceType] = None) -> List[Rule]:
        query: Dict[str, Any] = {"enabled": True}
        if source_type is not None:
            query["sourceType"] = source_type.value
        docs = await _run_in_thread(lambda: list(self._col().find(query).sort("priority", -1)))
        return [Rule.from_doc(d) for d in docs]

    async def list_rules(
        self, source_type: Optional[SourceType] = None, enabled: Optional[bool] = None
    ) -> List[Rule]:
        query: Dict[str, Any] = {}
        if source_type is not None:
            query["sourceType"] = source_type.value
        if enabled is not None:
            query["enabled"] = bool(enabled)
        docs = await _run_in_thread(lambda: list(self._col().find(query).sort("priority", -1)))
        return [Rule.from_doc(d) for d in docs]

    async def get(self, rule_id: str) -> Optional[Rule]:
        doc = await _run_in_thread(self._col().find_one, {"ruleId": rule_id})
        return Rule.from_doc(doc) if doc else None

    async def insert(self, rule: Rule) -> Rule:
        await _run_in_thread(self._col().insert_one, rule.to_doc())
        return rule

    async def replace(self, rule: Rule) -> bool:
        res = await _run_in_thread(self._col().replace_one, {"ruleId": rule.rule_id}, rule.to_doc(), upsert=False)
        return res.matched_count > 0

    async def delete(self, rule_id: str) -> bool:
        res = await _run_in_thread(self._col().delete_one, {"ruleId": rule_id})
        return res.deleted_count > 0


class MongoHistoryLog:
    """HistoryLog backed by the `alert_history` collection (insert-only)."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def _col(self):
        return self._mongo.collections().alert_history

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
        await _run_in_thread(self._col().insert_one, entry.to_doc())
        return entry

    async def for_alert(self, alert_id: str) -> List[HistoryEntry]:
        docs = await _run_in_thread(
            lambda: list(self._col().find({"alertId": alert_id}).sort("timestamp", -1))
        )
        return [HistoryEntry.from_doc(d) for d in docs]
