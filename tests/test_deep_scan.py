from datetime import datetime, timedelta

import pytest

from trust_monitor.models import AuditLog
from trust_monitor.services.audit_store import AuditStore
from trust_monitor.services.chain_reader import ChainEvent, canonical_order_key
from trust_monitor.services.deep_scan import DeepScanner, PaymentGate
from trust_monitor.services.exceptions import (
    ChainReadError,
    MonitorConfigError,
    OrderNotFound,
    PaymentVerificationError,
)
from trust_monitor.services.order_ledger import OrderLedger

RECEIVER = "0x1111111111111111111111111111111111111111"
T0 = datetime(2025, 3, 1, 10, 0, 0)


def _event(name, order_id, ts=None):
    return ChainEvent(name, 1, "0x" + "ab" * 32, {"orderId": canonical_order_key(order_id)}, timestamp=ts)


class FakeChainReader:
    def __init__(self, events=(), tx=None, error=None):
        self.events = list(events)
        self.tx = tx
        self.error = error

    def scan_recent(self, window):
        return list(self.events)

    def get_transaction(self, tx_hash):
        if self.error:
            raise self.error
        return self.tx


def test_timing_score():
    fast = [_event("OrderFunded", "x", T0), _event("OrderShipped", "x", T0 + timedelta(minutes=30))]
    medium = [_event("OrderFunded", "x", T0), _event("OrderShipped", "x", T0 + timedelta(hours=3))]
    slow = [_event("OrderFunded", "x", T0), _event("OrderShipped", "x", T0 + timedelta(days=1))]
    assert DeepScanner.timing_score(fast) == 40
    assert DeepScanner.timing_score(medium) == 20
    assert DeepScanner.timing_score(slow) == 0
    assert DeepScanner.timing_score([]) == 0


@pytest.mark.parametrize("amount,expected", [(0.5, 30), (50, 0), (250, 0), (300, 15), (1500, 35), (1234, 20)])
def test_value_score(amount, expected):
    assert DeepScanner.value_score(amount) == expected


def test_chain_consistency_score():
    assert DeepScanner.chain_consistency_score("COMPLETED", []) == 90
    assert DeepScanner.chain_consistency_score("COMPLETED", [_event("FundsReleased", "x")]) == 0
    assert DeepScanner.chain_consistency_score("SHIPPED", [_event("OrderFunded", "x")]) == 40
    assert DeepScanner.chain_consistency_score("CREATED", []) == 0


def test_perform_deep_scan_composite(app, make_order):
    make_order(order_id="O2", status="COMPLETED", amount=1500.0)
    events = [
        _event("OrderFunded", "O2", T0),
        _event("OrderShipped", "O2", T0 + timedelta(minutes=30)),
        _event("FundsReleased", "other-order", T0),
    ]
    scanner = DeepScanner(OrderLedger(), FakeChainReader(events), AuditStore())

    result = scanner.perform_deep_scan("O2")

    assert result.factors == {"timing": 40, "value": 35, "pattern": 25, "blockchain": 90}
    assert result.overall == pytest.approx(47.5)
    assert result.findings == ["Blockchain inconsistencies found"]
    assert result.recommendations == ["Verify smart contract interactions"]
    assert result.confidence == 90

    log = AuditLog.query.filter_by(category="fraud_detection").one()
    assert log.severity == "info"
    assert log.details["orderId"] == "O2"
    assert log.details["deepScan"] is True


def test_perform_deep_scan_unknown_order(app):
    scanner = DeepScanner(OrderLedger(), FakeChainReader(), AuditStore())
    with pytest.raises(OrderNotFound):
        scanner.perform_deep_scan("nope")


def test_payment_request_has_unique_id(app):
    gate = PaymentGate(FakeChainReader(), AuditStore(), receiver=RECEIVER)
    a = gate.generate_payment_request("deepScan", "0.05")
    b = gate.generate_payment_request("deepScan", "0.05")
    assert a.payment_id.startswith("payment-deepScan-")
    assert a.payment_id != b.payment_id
    assert a.receiver.lower() == RECEIVER
    assert a.to_dict()["amount"] == "0.05"


@pytest.mark.parametrize("tx,ok", [
    ({"to": RECEIVER, "value": 2 * 10 ** 16}, True),
    ({"to": RECEIVER.upper().replace("0X", "0x"), "value": 10 ** 18}, True),
    ({"to": "0x9999999999999999999999999999999999999999", "value": 10 ** 18}, False),
    ({"to": RECEIVER, "value": 10 ** 16}, False),
    ({"to": None, "value": 10 ** 18}, False),
])
def test_verify_payment(app, tx, ok):
    gate = PaymentGate(FakeChainReader(tx=tx), AuditStore(), receiver=RECEIVER)
    assert gate.verify_payment("0xfeed") is ok
    log = AuditLog.query.filter_by(category="fraud_detection").one()
    assert log.severity == ("info" if ok else "warning")


def test_verify_payment_fetch_failure_is_rejection(app):
    gate = PaymentGate(FakeChainReader(error=ChainReadError("timeout")), AuditStore(), receiver=RECEIVER)
    assert gate.verify_payment("0xfeed") is False


def test_payment_gate_requires_receiver(app):
    gate = PaymentGate(FakeChainReader(), AuditStore(), receiver=None)
    with pytest.raises(MonitorConfigError):
        gate.generate_payment_request("deepScan", "0.05")


def test_require_payment(app):
    good = PaymentGate(FakeChainReader(tx={"to": RECEIVER, "value": 10 ** 17}), AuditStore(), receiver=RECEIVER)
    good.require_payment("0x" + "ab" * 32)

    with pytest.raises(PaymentVerificationError):
        good.require_payment("0xabc")

    cheap = PaymentGate(FakeChainReader(tx={"to": RECEIVER, "value": 1}), AuditStore(), receiver=RECEIVER)
    with pytest.raises(PaymentVerificationError):
        cheap.require_payment("0x" + "cd" * 32)


def test_payment_cannot_be_replayed(app):
    reader = FakeChainReader(tx={"to": RECEIVER, "value": 10 ** 17})
    gate = PaymentGate(reader, AuditStore(), receiver=RECEIVER)
    tx_hash = "0x" + "ef" * 32

    gate.require_payment(tx_hash)

    with pytest.raises(PaymentVerificationError, match="already been used"):
        gate.require_payment(tx_hash)
    # same hash, different case
    with pytest.raises(PaymentVerificationError, match="already been used"):
        gate.require_payment(tx_hash.upper().replace("0X", "0x"))

    assert AuditLog.query.filter_by(category="fraud_detection").count() == 1


def test_rejected_payment_is_not_consumed(app):
    reader = FakeChainReader(tx={"to": RECEIVER, "value": 1})
    store = AuditStore()
    gate = PaymentGate(reader, store, receiver=RECEIVER)
    tx_hash = "0x" + "12" * 32

    with pytest.raises(PaymentVerificationError, match="not accepted"):
        gate.require_payment(tx_hash)
    assert store.payment_consumed(tx_hash) is False


def test_consume_payment_is_single_use(app):
    store = AuditStore()
    assert store.consume_payment("0x" + "AB" * 32, "deepScan") is True
    assert store.consume_payment("0x" + "ab" * 32, "deepScan") is False
    assert store.payment_consumed("0x" + "ab" * 32) is True
