from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


APP_DB_NAME = "sentinel"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alerts: Collection
    rules: Collection
    alert_history: Collection


class MongoManager:
    """MongoDB connection manager holding one MongoClient for the app database."""

    def __init__(self, app_mongo_uri: str, db_name: str = APP_DB_NAME):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # tz_aware so stored datetimes compare against utc_now() without conversion.
            self._app_client = MongoClient(self._app_mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """
        Ping the configured MongoDB to validate connectivity.

        This is used by startup validation and the connectivity-check endpoint.
        """
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the sentinel database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            alerts=db["alerts"],
            rules=db["rules"],
            alert_history=db["alert_history"],
        )

    def init_indexes(self) -> None:
        """
        Create required indexes (idempotent).

        alerts.expiresAt carries a TTL index with expireAfterSeconds=0, so MongoDB's TTL
        monitor removes alerts once their expiry passes. Removal is not immediate; read
        paths still filter on expiresAt themselves.
        """
        cols = self.collections()

        # ---- Alerts ----
        cols.alerts.create_index([("alertId", ASCENDING)], unique=True, name="idx_alerts_alertId")
        cols.alerts.create_index([("status", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_status_ts")
        cols.alerts.create_index(
            [("metadata.driverId", ASCENDING), ("status", ASCENDING)], name="idx_alerts_driver_status"
        )
        cols.alerts.create_index(
            [("sourceType", ASCENDING), ("status", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_alerts_source_status_ts",
        )
        cols.alerts.create_index([("severity", ASCENDING), ("status", ASCENDING)], name="idx_alerts_severity_status")
        cols.alerts.create_index([("expiresAt", ASCENDING)], name="ttl_alerts_expiresAt", expireAfterSeconds=0)

        # ---- Rules ----
        cols.rules.create_index([("ruleId", ASCENDING)], unique=True, name="idx_rules_ruleId")
        cols.rules.create_index([("sourceType", ASCENDING), ("enabled", ASCENDING)], name="idx_rules_source_enabled")
        cols.rules.create_index([("priority", DESCENDING)], name="idx_rules_priority_desc")

        # ---- Alert history ----
        cols.alert_history.create_index(
            [("alertId", ASCENDING), ("timestamp", DESCENDING)], name="idx_history_alert_ts"
        )
        cols.alert_history.create_index([("timestamp", DESCENDING)], name="idx_history_ts_desc")
