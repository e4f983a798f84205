from datetime import datetime, timezone

import pytest
from hexbytes import HexBytes

from trust_monitor.models import AuditLog
from trust_monitor.services.audit_store import AuditStore
from trust_monitor.services.chain_reader import ESCROW_EVENT_NAMES, ChainLogReader, canonical_order_key
from trust_monitor.services.exceptions import ChainReadError, MonitorConfigError

ESCROW = "0x2222222222222222222222222222222222222222"


class FakeEth:
    block_number = 5000
    balances = {"0x3333333333333333333333333333333333333333": 7 * 10 ** 18}

    def contract(self, address, abi):
        return object()

    def get_block(self, n):
        return {"timestamp": 1_700_000_000 + n}

    def get_transaction(self, tx_hash):
        raise ValueError("not found")

    def get_balance(self, address):
        return self.balances.get(address.lower(), 0)


class FakeW3:
    def __init__(self):
        self.eth = FakeEth()


def _decoded(block, log_index, order_id="O1"):
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": HexBytes("0x" + "cd" * 32),
        "args": {"orderId": HexBytes(canonical_order_key(order_id)), "amount": 10},
    }


@pytest.fixture()
def reader(app):
    return ChainLogReader(AuditStore(), ESCROW, w3=FakeW3())


def test_scan_events_merges_and_sorts(reader, monkeypatch):
    logs = {
        "OrderFunded": [_decoded(10, 2)],
        "OrderShipped": [_decoded(12, 0)],
        "FundsReleased": [_decoded(10, 1)],
    }
    monkeypatch.setattr(reader, "_fetch_logs", lambda name, f, t: logs.get(name, []))

    events = reader.scan_events(0, 100)

    assert [(e.event_name, e.block_number) for e in events] == [
        ("FundsReleased", 10), ("OrderFunded", 10), ("OrderShipped", 12),
    ]
    assert events[0].order_key == canonical_order_key("O1")
    assert events[0].timestamp == datetime.fromtimestamp(1_700_000_010, tz=timezone.utc).replace(tzinfo=None)

    info = AuditLog.query.filter_by(category="contract_scan", severity="info").one()
    assert info.details["eventsFound"] == 3
    assert info.contract_address == ESCROW


def test_failing_signature_is_skipped(reader, monkeypatch):
    def fetch(name, f, t):
        if name == "Disputed":
            raise ConnectionError("rpc reset")
        if name == "OrderFunded":
            return [_decoded(7, 0)]
        return []

    monkeypatch.setattr(reader, "_fetch_logs", fetch)

    events = reader.scan_events(0, 100)

    assert [e.event_name for e in events] == ["OrderFunded"]
    warning = AuditLog.query.filter_by(category="contract_scan", severity="warning").one()
    assert warning.event_name == "Disputed"
    assert "rpc reset" in warning.error
    info = AuditLog.query.filter_by(category="contract_scan", severity="info").one()
    assert info.details["failedEvents"] == ["Disputed"]


def test_scan_without_escrow_logs_error_and_raises(app):
    reader = ChainLogReader(AuditStore(), None, w3=FakeW3())
    with pytest.raises(MonitorConfigError):
        reader.scan_events(0, 10)
    assert AuditLog.query.filter_by(category="contract_scan", severity="error").count() == 1


def test_scan_rejects_inverted_range(reader):
    with pytest.raises(ValueError):
        reader.scan_events(10, 5)


def test_scan_recent_uses_head(reader, monkeypatch):
    seen = []
    monkeypatch.setattr(reader, "_fetch_logs", lambda name, f, t: seen.append((f, t)) or [])

    reader.scan_recent(1000)

    assert set(seen) == {(4000, 5000)}
    assert len(seen) == len(ESCROW_EVENT_NAMES)


def test_get_transaction_wraps_rpc_errors(reader):
    with pytest.raises(ChainReadError):
        reader.get_transaction("0x" + "00" * 32)


def test_latest_block_number(reader):
    assert reader.latest_block_number() == 5000


def test_latest_block_number_wraps_rpc_errors(app):
    class DownEth(FakeEth):
        @property
        def block_number(self):
            raise ConnectionError("rpc down")

    w3 = FakeW3()
    w3.eth = DownEth()
    reader = ChainLogReader(AuditStore(), ESCROW, w3=w3)
    with pytest.raises(ChainReadError, match="latest block"):
        reader.latest_block_number()


def test_balance_of(reader):
    assert reader.balance_of("0x3333333333333333333333333333333333333333") == 7 * 10 ** 18
    assert reader.balance_of("0x4444444444444444444444444444444444444444") == 0


def test_balance_of_rejects_bad_address(reader):
    with pytest.raises(ChainReadError, match="balance"):
        reader.balance_of("not-an-address")
