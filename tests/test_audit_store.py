from datetime import datetime, timedelta

import pytest

from trust_monitor.models import db, AuditLog, RiskScore
from trust_monitor.services.audit_store import AuditStore

NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture()
def store(app):
    return AuditStore(retention_days=30, clock=lambda: NOW)


def test_logs_past_retention_are_not_returned(store):
    store.record("endpoint_test", "info", timestamp=NOW - timedelta(days=31), endpoint="/old")
    store.record("endpoint_test", "info", timestamp=NOW - timedelta(days=1), endpoint="/new")

    items, total = store.query_logs()
    assert total == 1
    assert [l.endpoint for l in items] == ["/new"]
    assert [l.endpoint for l in store.logs_since(NOW - timedelta(days=90))] == ["/new"]


def test_purge_expired_deletes_only_old_rows(store):
    store.record("health_check", "info", timestamp=NOW - timedelta(days=45))
    store.record("health_check", "info", timestamp=NOW - timedelta(days=2))

    assert store.purge_expired() == 1
    assert AuditLog.query.count() == 1


def test_query_logs_filters_and_orders_newest_first(store):
    for i in range(3):
        store.record("contract_scan", "info", timestamp=NOW - timedelta(minutes=i), block_number=i)
    store.record("endpoint_test", "error", timestamp=NOW)

    items, total = store.query_logs(category="contract_scan", limit=2)
    assert total == 3
    assert [l.block_number for l in items] == [0, 1]

    items, total = store.query_logs(severity="error")
    assert total == 1 and items[0].category == "endpoint_test"


def test_record_rejects_unknown_category(store):
    with pytest.raises(ValueError):
        store.record("nonsense", "info")
    with pytest.raises(ValueError):
        store.record("health_check", "fatal")


def test_record_stores_metadata(store):
    entry = store.record("fraud_detection", "warning", metadata={"txHash": "0xabc"})
    assert db.session.get(AuditLog, entry.id).details == {"txHash": "0xabc"}


def test_alert_is_not_duplicated_while_active(store):
    kwargs = dict(type="mismatch", title="t", description="d", severity="high", order_id="O1")
    first, created = store.raise_alert("mismatch:O1:COMPLETED:FUNDED", **kwargs)
    assert created is True
    assert first.alert_id.startswith("mismatch-")

    again, created = store.raise_alert("mismatch:O1:COMPLETED:FUNDED", **kwargs)
    assert created is False
    assert again.alert_id == first.alert_id

    store.resolve_alert(first.alert_id, "investigating")
    _, created = store.raise_alert("mismatch:O1:COMPLETED:FUNDED", **kwargs)
    assert created is False

    store.resolve_alert(first.alert_id, "resolved", "ops")
    fresh, created = store.raise_alert("mismatch:O1:COMPLETED:FUNDED", **kwargs)
    assert created is True
    assert fresh.alert_id != first.alert_id


def test_mismatch_alert_requires_order(store):
    with pytest.raises(ValueError):
        store.raise_alert("mismatch:x", type="mismatch", title="t", description="d", severity="low")


def test_repeat_at_higher_severity_escalates_active_alert(store):
    alert, _ = store.raise_alert("fraud:0xabc", type="fraud", title="t", description="score 70",
                                 severity="high", metadata={"riskScore": 70})

    same, created = store.raise_alert("fraud:0xabc", type="fraud", title="t", description="score 100",
                                      severity="critical", metadata={"riskScore": 100},
                                      recommended_action="Suspend")
    assert created is False
    assert same.alert_id == alert.alert_id
    assert (same.severity, same.description, same.details) == ("critical", "score 100", {"riskScore": 100})
    assert same.recommended_action == "Suspend"

    # never downgraded
    store.raise_alert("fraud:0xabc", type="fraud", title="t", description="score 72",
                      severity="high", metadata={"riskScore": 72})
    assert store.active_alert("fraud:0xabc").severity == "critical"
    assert store.active_alert("fraud:0xabc").details == {"riskScore": 100}


def test_resolve_alert(store):
    alert, _ = store.raise_alert("fraud:0xabc", type="fraud", title="t", description="d",
                                 severity="critical", wallet_address="0xabc")

    resolved = store.resolve_alert(alert.alert_id, "false_positive", "analyst@x")
    assert resolved.status == "false_positive"
    assert resolved.resolved_by == "analyst@x"
    assert resolved.resolved_at == NOW

    assert store.resolve_alert("missing-id", "resolved") is None
    with pytest.raises(ValueError):
        store.resolve_alert(alert.alert_id, "closed")
    assert store.query_alerts(status="open") == []


def test_upsert_risk_score_keeps_one_row_and_flag_in_sync(store):
    row = store.upsert_risk_score("0xabc", user_type="buyer", risk_score=75, risk_level="high",
                                  factors={"orderCount": 3})
    assert row.flagged is True

    row = store.upsert_risk_score("0xabc", user_type="buyer", risk_score=40, risk_level="medium",
                                  factors={"orderCount": 4})
    assert row.flagged is False
    assert row.risk_score == 40
    assert row.factors == {"orderCount": 4}
    assert RiskScore.query.count() == 1
    assert store.top_flagged() == []
