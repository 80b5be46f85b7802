from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.sentinel.config import BackendConfig
from src.sentinel.db.mongo import MongoManager
from src.sentinel.db.repositories import (
    AlertStore,
    HistoryLog,
    MongoAlertStore,
    MongoHistoryLog,
    MongoRuleStore,
    RuleStore,
)
from src.sentinel.services.cache import CacheManager
from src.sentinel.services.rule_engine import RuleEngine, RuleSelectionPolicy
from src.sentinel.services.scheduler import BatchScheduler


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    cache: CacheManager
    alerts: AlertStore
    rules: RuleStore
    history: HistoryLog
    engine: RuleEngine
    scheduler: BatchScheduler
    mongo: Optional[MongoManager] = None  # None when stores are not Mongo-backed (tests)


# PUBLIC_INTERFACE
def build_state(
    config: BackendConfig,
    alerts: AlertStore,
    rules: RuleStore,
    history: HistoryLog,
    mongo: Optional[MongoManager] = None,
) -> AppState:
    """Wire cache, rule engine and scheduler around the given stores."""
    cache = CacheManager(default_ttl=config.rule_cache_ttl_sec)
    engine = RuleEngine(
        alerts,
        rules,
        history,
        cache,
        rule_cache_ttl_sec=config.rule_cache_ttl_sec,
        policy=RuleSelectionPolicy(config.rule_selection_policy),
    )
    scheduler = BatchScheduler(
        engine,
        alerts,
        cache,
        auto_close_schedule=config.auto_close_schedule,
        rule_evaluation_schedule=config.rule_evaluation_schedule,
        batch_size=config.sweep_batch_size,
    )
    return AppState(
        config=config,
        cache=cache,
        alerts=alerts,
        rules=rules,
        history=history,
        engine=engine,
        scheduler=scheduler,
        mongo=mongo,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> None:
    """Initialize app.state with Mongo-backed stores, engine and scheduler."""
    mongo = MongoManager(config.mongo_uri, db_name=config.mongo_db_name)
    app.state.state = build_state(
        config,
        MongoAlertStore(mongo),
        MongoRuleStore(mongo),
        MongoHistoryLog(mongo),
        mongo=mongo,
    )


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
