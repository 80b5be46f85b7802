from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.sentinel.config import load_config, parse_schedule_interval, seconds_until_next_run

_ENV_VARS = (
    "SENTINEL_MONGO_URI",
    "BACKEND_MONGO_URI",
    "SENTINEL_MONGO_DB",
    "AUTO_CLOSE_JOB_INTERVAL",
    "RULE_EVALUATION_INTERVAL",
    "SWEEP_BATCH_SIZE",
    "RULE_SELECTION_POLICY",
    "SCHEDULER_ENABLED",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.parametrize(
    "expr,seconds",
    [
        ("300", 300),
        ("45s", 45),
        ("5m", 300),
        ("1h", 3600),
        ("* * * * *", 60),
        ("*/5 * * * *", 300),
        ("*/2 * * * *", 120),
        ("0 * * * *", 3600),
        ("0,30 * * * *", 1800),
        ("*/10 8-18 * * *", 600),
        ("0 6 * * *", 86400),
    ],
)
def test_parse_schedule_interval(expr, seconds):
    assert parse_schedule_interval(expr) == seconds


@pytest.mark.parametrize("expr", ["", "soon", "61 * * * *", "* * *", "* * * * * *", "5 minutes"])
def test_parse_schedule_interval_rejects_unsupported(expr):
    with pytest.raises(ValueError):
        parse_schedule_interval(expr)


def test_seconds_until_next_run_follows_cron_fire_times():
    # 2026-01-05 is a Monday.
    before_window = datetime(2026, 1, 5, 7, 0, tzinfo=timezone.utc)
    inside_window = datetime(2026, 1, 5, 8, 5, tzinfo=timezone.utc)
    after_window = datetime(2026, 1, 5, 18, 50, tzinfo=timezone.utc)

    assert seconds_until_next_run("*/10 8-18 * * *", before_window) == 3600
    assert seconds_until_next_run("*/10 8-18 * * *", inside_window) == 300
    assert seconds_until_next_run("*/10 8-18 * * *", after_window) == 13 * 3600 + 10 * 60
    assert seconds_until_next_run("0 * * * *", inside_window) == 55 * 60


def test_seconds_until_next_run_fixed_interval():
    assert seconds_until_next_run("90s") == 90
    assert seconds_until_next_run("2m") == 120
    with pytest.raises(ValueError):
        seconds_until_next_run("whenever")


def test_load_config_accepts_hourly_cron(clean_env):
    clean_env.setenv("SENTINEL_MONGO_URI", "mongodb://localhost:27017")
    clean_env.setenv("AUTO_CLOSE_JOB_INTERVAL", "0 * * * *")
    clean_env.setenv("RULE_EVALUATION_INTERVAL", "*/10 8-18 * * *")

    cfg = load_config()
    assert cfg.auto_close_schedule == "0 * * * *"
    assert cfg.auto_close_interval_sec == 3600
    assert cfg.rule_evaluation_schedule == "*/10 8-18 * * *"
    assert cfg.rule_evaluation_interval_sec == 600


def test_load_config_defaults(clean_env):
    clean_env.setenv("SENTINEL_MONGO_URI", "mongodb://localhost:27017")
    cfg = load_config()

    assert cfg.mongo_uri_source == "SENTINEL_MONGO_URI"
    assert cfg.mongo_db_name == "sentinel"
    assert cfg.auto_close_interval_sec == 300
    assert cfg.rule_evaluation_interval_sec == 120
    assert cfg.sweep_batch_size == 100
    assert cfg.rule_selection_policy == "last_loaded"
    assert cfg.scheduler_enabled is True


def test_load_config_overrides_and_clamps(clean_env):
    clean_env.setenv("BACKEND_MONGO_URI", "mongodb+srv://user:pw@cluster.example.net")
    clean_env.setenv("AUTO_CLOSE_JOB_INTERVAL", "90s")
    clean_env.setenv("RULE_EVALUATION_INTERVAL", "every now and then")
    clean_env.setenv("SWEEP_BATCH_SIZE", "50000")
    clean_env.setenv("RULE_SELECTION_POLICY", "Highest_Priority")
    clean_env.setenv("SCHEDULER_ENABLED", "off")

    cfg = load_config()
    assert cfg.mongo_uri_source == "BACKEND_MONGO_URI"
    assert cfg.auto_close_interval_sec == 90
    assert cfg.rule_evaluation_schedule == "*/2 * * * *"
    assert cfg.rule_evaluation_interval_sec == 120
    assert cfg.sweep_batch_size == 1000
    assert cfg.rule_selection_policy == "highest_priority"
    assert cfg.scheduler_enabled is False


def test_load_config_unknown_policy_falls_back(clean_env):
    clean_env.setenv("SENTINEL_MONGO_URI", "mongodb://localhost:27017")
    clean_env.setenv("RULE_SELECTION_POLICY", "random")
    assert load_config().rule_selection_policy == "last_loaded"


def test_load_config_requires_a_valid_uri(clean_env):
    with pytest.raises(RuntimeError):
        load_config()

    clean_env.setenv("SENTINEL_MONGO_URI", "postgres://localhost")
    with pytest.raises(RuntimeError):
        load_config()
