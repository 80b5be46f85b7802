from __future__ import annotations

from datetime import timedelta

from src.sentinel.models import DEFAULT_ESCALATION_NOTE, Alert, HistoryEntry, Rule
from src.sentinel.schemas.common import AlertStatus, Severity, SourceType, TriggerActor, utc_now


def _alert(status: AlertStatus = AlertStatus.open) -> Alert:
    return Alert(alert_id="ALT-1", source_type=SourceType.overspeed, severity=Severity.warning, status=status)


def test_escalate_from_open_forces_critical_and_sets_note():
    alert = _alert()
    alert.escalate("3 overspeed alerts detected within 10 minutes")

    assert alert.status == AlertStatus.escalated
    assert alert.severity == Severity.critical
    assert alert.escalated_at is not None
    assert alert.notes == "3 overspeed alerts detected within 10 minutes"


def test_escalate_without_reason_uses_default_note():
    alert = _alert().escalate()
    assert alert.notes == DEFAULT_ESCALATION_NOTE


def test_escalate_is_noop_outside_open():
    for status in (AlertStatus.escalated, AlertStatus.auto_closed, AlertStatus.resolved):
        alert = _alert(status)
        alert.escalate("again")
        assert alert.status == status
        assert alert.severity == Severity.warning
        assert alert.escalated_at is None


def test_auto_close_from_open_and_escalated():
    for status in (AlertStatus.open, AlertStatus.escalated):
        alert = _alert(status)
        alert.auto_close("Alert aged beyond 60 minutes")
        assert alert.status == AlertStatus.auto_closed
        assert alert.auto_closed_at is not None
        assert alert.closure_reason == "Alert aged beyond 60 minutes"


def test_auto_close_is_noop_on_terminal_alerts():
    for status in (AlertStatus.auto_closed, AlertStatus.resolved):
        alert = _alert(status)
        alert.auto_close("late")
        assert alert.status == status
        assert alert.closure_reason is None


def test_resolve_is_unconditional():
    alert = _alert(AlertStatus.auto_closed)
    alert.resolve("op-7", "double checked")

    assert alert.status == AlertStatus.resolved
    assert alert.resolved_by == "op-7"
    assert alert.notes == "double checked"
    assert alert.resolved_at is not None
    assert alert.is_terminal and not alert.is_active


def test_age_and_expiry():
    now = utc_now()
    alert = _alert()
    alert.timestamp = now - timedelta(minutes=90)
    assert round(alert.age_minutes(now)) == 90

    assert not alert.is_expired(now)
    alert.expires_at = now - timedelta(seconds=1)
    assert alert.is_expired(now)


def test_alert_doc_uses_camel_case_and_reads_back():
    alert = _alert()
    alert.metadata = {"driverId": "D9"}
    doc = alert.to_doc()
    assert doc["alertId"] == "ALT-1"
    assert doc["sourceType"] == "overspeed"
    assert doc["status"] == "OPEN"

    doc["_id"] = "65f000000000000000000001"
    loaded = Alert.from_doc(doc)
    assert loaded.id == "65f000000000000000000001"
    assert loaded.driver_id == "D9"
    assert loaded.timestamp.tzinfo is not None


def test_rule_and_history_docs():
    rule = Rule.from_doc(
        {
            "ruleId": "R-1",
            "sourceType": "compliance",
            "name": "Docs",
            "priority": 3,
            "conditions": {"auto_close_if": "document_valid"},
            "actions": {"escalate_to_severity": "CRITICAL", "notify": True, "notificationChannels": ["sms"]},
        }
    )
    assert rule.enabled is True
    assert rule.conditions.auto_close_if == "document_valid"
    assert rule.conditions.escalate_if_count is None
    assert rule.actions.notification_channels == ["sms"]
    assert rule.to_doc()["actions"]["escalate_to_severity"] == "CRITICAL"

    entry = HistoryEntry(
        alert_id="ALT-1",
        alert_ref=None,
        from_status=None,
        to_status=AlertStatus.open,
        reason="Alert created",
        triggered_by=TriggerActor.system,
    )
    doc = entry.to_doc()
    assert doc["fromStatus"] is None
    assert doc["triggeredBy"] == "SYSTEM"
    assert HistoryEntry.from_doc(doc).to_status == AlertStatus.open
