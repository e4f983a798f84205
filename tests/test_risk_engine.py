from datetime import datetime, timedelta

import pytest

from trust_monitor.models import AuditAlert, RiskScore
from trust_monitor.services.audit_store import AuditStore
from trust_monitor.services.order_ledger import OrderLedger
from trust_monitor.services.risk_engine import RiskScoringEngine
from trust_monitor.services.risk_rules import RULESET_V1, RiskFactors, risk_level

W1 = "0x00000000000000000000000000000000000000A1"


@pytest.fixture()
def engine(app):
    return RiskScoringEngine(OrderLedger(), AuditStore())


def test_wallet_without_orders_gets_base_score(engine):
    a = engine.assess_wallet("0x00000000000000000000000000000000000000ff")
    assert a.score == 50
    assert a.level == "medium"
    assert a.flagged is False

    row = RiskScore.query.filter_by(wallet_address="0x00000000000000000000000000000000000000ff").one()
    assert row.risk_score == 50 and row.flagged is False
    assert AuditAlert.query.count() == 0


def test_high_risk_wallet_is_clamped_and_flagged(engine, make_order):
    # 10 orders this week: 4 disputed, 3 refunded, avg value 1500
    statuses = ["DISPUTED"] * 4 + ["REFUNDED"] * 3 + ["COMPLETED"] * 3
    for s in statuses:
        make_order(buyer_address=W1, status=s, amount=1500.0)

    a = engine.assess_wallet(W1, "buyer")

    assert a.score == 100
    assert a.level == "critical"
    assert a.flagged is True
    assert set(a.rules_fired) == {"dispute_rate_high", "refund_rate_high", "new_account", "high_value_orders"}
    assert a.factors.suspicious_patterns == [
        "High dispute rate", "High refund rate", "New account", "High value orders",
    ]

    row = RiskScore.query.filter_by(wallet_address=W1.lower()).one()
    assert row.flagged is True
    assert row.factors["ruleset"] == "v1"

    alert = AuditAlert.query.one()
    assert alert.type == "fraud"
    assert alert.severity == "critical"
    assert alert.wallet_address == W1.lower()
    assert alert.recommended_action == "Suspend account pending review"

    # a second assessment keeps the same open alert
    engine.assess_wallet(W1, "buyer")
    assert AuditAlert.query.count() == 1


def test_ruleset_elevated_dispute_rate_has_no_label():
    factors = RiskFactors(dispute_rate=0.2, order_count=10, account_age_days=30)
    score, fired, labels = RULESET_V1.evaluate(factors)
    assert score == 65
    assert fired == ["dispute_rate_elevated"]
    assert labels == []


def test_ruleset_velocity():
    factors = RiskFactors(order_count=11, recent_orders=11, account_age_days=30)
    score, fired, labels = RULESET_V1.evaluate(factors)
    assert score == 65
    assert labels == ["High order velocity"]


@pytest.mark.parametrize("score,level", [(0, "low"), (39, "low"), (40, "medium"), (60, "high"), (80, "critical"), (100, "critical")])
def test_risk_level(score, level):
    assert risk_level(score) == level


def test_detect_repeated_disputes(engine, make_order):
    for _ in range(3):
        make_order(buyer_address=W1, status="DISPUTED")
    make_order(buyer_address="0x00000000000000000000000000000000000000b2", status="DISPUTED")

    patterns = engine.detect_fraud_patterns()

    assert len(patterns) == 1
    p = patterns[0]
    assert p.type == "repeated_disputes"
    assert p.wallet_address == W1.lower()
    assert p.confidence == 60
    assert p.risk_score == 100


def test_detect_rapid_refunds(engine, make_order):
    created = datetime.utcnow() - timedelta(days=3)
    for _ in range(2):
        make_order(buyer_address=W1, status="REFUNDED", created_at=created, updated_at=created + timedelta(days=1))

    slow = "0x00000000000000000000000000000000000000c3"
    for _ in range(2):
        make_order(buyer_address=slow, status="REFUNDED", created_at=created, updated_at=created + timedelta(days=3))

    patterns = engine.detect_fraud_patterns()

    assert [(p.type, p.wallet_address, p.confidence) for p in patterns] == [("rapid_refunds", W1.lower(), 80)]


def test_three_day_old_wallet_with_forty_percent_disputes(engine, make_order):
    created = datetime.utcnow() - timedelta(days=3)
    for s in ["DISPUTED"] * 4 + ["COMPLETED"] * 6:
        make_order(buyer_address=W1, status=s, created_at=created, updated_at=created)

    a = engine.assess_wallet(W1)

    assert a.rules_fired == ["dispute_rate_high", "new_account"]
    assert a.factors.account_age_days == 3
    assert (a.score, a.level, a.flagged) == (100, "critical", True)


def test_fraud_alert_escalates_when_score_turns_critical(engine, make_order):
    make_order(buyer_address=W1, status="COMPLETED")
    first = engine.assess_wallet(W1)
    assert first.score == 70

    alert = AuditAlert.query.one()
    assert alert.severity == "high"
    assert alert.recommended_action == "Monitor closely"

    for _ in range(4):
        make_order(buyer_address=W1, status="DISPUTED")
    second = engine.assess_wallet(W1)
    assert second.score == 100

    alert = AuditAlert.query.one()
    assert alert.severity == "critical"
    assert alert.details["riskScore"] == 100
    assert "High dispute rate" in alert.description
    assert alert.recommended_action == "Suspend account pending review"
