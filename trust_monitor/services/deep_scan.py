# trust_monitor/services/deep_scan.py
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from web3 import Web3

from trust_monitor.services.chain_reader import ChainEvent, canonical_order_key
from trust_monitor.services.exceptions import (
    ChainReadError,
    MonitorConfigError,
    OrderNotFound,
    PaymentVerificationError,
)

logger = logging.getLogger(__name__)

DEEP_SCAN_BLOCK_WINDOW = 5000
FINDING_THRESHOLD = 70
DEFAULT_MIN_VALUE_WEI = 20_000_000_000_000_000  # 0.02 native units

_TX_HASH = re.compile(r"^0x[0-9a-fA-F]{64}$")

EXPECTED_EVENT_FOR_STATUS = {
    "FUNDED": "OrderFunded",
    "SHIPPED": "OrderShipped",
    "DELIVERED": "OrderDelivered",
    "COMPLETED": "FundsReleased",
    "DISPUTED": "Disputed",
    "REFUNDED": "Refunded",
}

# factor -> (finding, recommendation)
FACTOR_FINDINGS = {
    "timing": ("Suspicious timing patterns detected", "Manual review of shipping timeline"),
    "value": ("Unusual transaction value patterns", "Verify order value against market rates"),
    "pattern": ("Behavioral anomalies detected", "Review user transaction history"),
    "blockchain": ("Blockchain inconsistencies found", "Verify smart contract interactions"),
}


def is_tx_hash(tx_hash: str) -> bool:
    return bool(_TX_HASH.match(tx_hash or ""))


def _clamp(score: float) -> int:
    return int(max(0, min(100, score)))


@dataclass
class PaymentQuote:
    amount: str
    token: str
    receiver: str
    memo: str
    payment_id: str

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "token": self.token,
            "receiver": self.receiver,
            "memo": self.memo,
            "paymentId": self.payment_id,
        }


@dataclass
class DeepScanResult:
    order_id: str
    overall: float
    factors: Dict[str, int]
    findings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    confidence: int = 95

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "riskAssessment": {"overall": self.overall, "factors": dict(self.factors)},
            "findings": list(self.findings),
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
        }


class PaymentGate:
    """
    x402-style paywall: quote a price, then accept a native transfer to the
    platform receiver as proof of payment.
    """

    def __init__(
        self,
        chain_reader,
        store,
        receiver: Optional[str],
        token: str = "USDC",
        min_value_wei: int = DEFAULT_MIN_VALUE_WEI,
    ):
        self.chain_reader = chain_reader
        self.store = store
        self.receiver = receiver
        self.token = token
        self.min_value_wei = int(min_value_wei)

    def _receiver(self) -> str:
        if not self.receiver or not Web3.is_address(self.receiver):
            raise MonitorConfigError(f"PLATFORM_RECEIVER_WALLET missing or invalid: {self.receiver!r}")
        return Web3.to_checksum_address(self.receiver)

    def generate_payment_request(self, feature: str, price: str) -> PaymentQuote:
        stamp = int(time.time() * 1000)
        return PaymentQuote(
            amount=str(price),
            token=self.token,
            receiver=self._receiver(),
            memo=f"TrustMonitor-{feature}-{stamp}",
            payment_id=f"payment-{feature}-{uuid.uuid4().hex}",
        )

    def verify_payment(self, tx_hash: str) -> bool:
        receiver = self._receiver()
        try:
            tx = self.chain_reader.get_transaction(tx_hash)
        except ChainReadError as e:
            logger.warning("Payment %s could not be fetched: %s", tx_hash, e)
            self.store.record(
                "fraud_detection", "warning",
                error=str(e),
                metadata={"txHash": tx_hash, "verified": False, "reason": "fetch_failed"},
            )
            return False

        to = tx.get("to")
        value = int(tx.get("value") or 0)
        receiver_ok = bool(to) and str(to).lower() == receiver.lower()
        amount_ok = value >= self.min_value_wei
        verified = receiver_ok and amount_ok

        if not verified:
            logger.warning("Payment %s rejected (receiver_ok=%s amount_ok=%s)", tx_hash, receiver_ok, amount_ok)
        self.store.record(
            "fraud_detection", "info" if verified else "warning",
            metadata={
                "txHash": tx_hash,
                "verified": verified,
                "receiver": to,
                "value": str(value),
            },
        )
        return verified

    def require_payment(self, tx_hash: str, feature: str = "deepScan") -> None:
        """Verify a payment and redeem it; each tx hash pays for one request."""
        if not is_tx_hash(tx_hash):
            raise PaymentVerificationError(f"Malformed payment transaction hash: {tx_hash}")
        if self.store.payment_consumed(tx_hash):
            raise PaymentVerificationError(f"Payment {tx_hash} has already been used")
        if not self.verify_payment(tx_hash):
            raise PaymentVerificationError(f"Payment {tx_hash} was not accepted")
        if not self.store.consume_payment(tx_hash, feature):
            raise PaymentVerificationError(f"Payment {tx_hash} has already been used")


class DeepScanner:
    """Multi-factor analysis of a single order; run only after a verified payment."""

    def __init__(
        self,
        ledger,
        chain_reader,
        store,
        block_window: int = DEEP_SCAN_BLOCK_WINDOW,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.chain_reader = chain_reader
        self.store = store
        self.block_window = block_window
        self._clock = clock

    # ---------------------------
    # Factors
    # ---------------------------

    @staticmethod
    def timing_score(events: List[ChainEvent]) -> int:
        funded = next((e for e in events if e.event_name == "OrderFunded"), None)
        shipped = next((e for e in events if e.event_name == "OrderShipped"), None)
        score = 0
        if funded and shipped and funded.timestamp and shipped.timestamp:
            hours = (shipped.timestamp - funded.timestamp).total_seconds() / 3600
            if hours < 1:
                score += 40
            elif hours < 6:
                score += 20
        return _clamp(score)

    @staticmethod
    def value_score(amount: float) -> int:
        score = 0
        if amount > 1000:
            score += 20
        if amount < 1:
            score += 30
        if amount > 100 and amount % 100 == 0:
            score += 15
        return _clamp(score)

    def behavioral_score(self, order) -> int:
        score = 0
        buyer_orders = self.ledger.for_wallet(order.buyer_address, "buyer")
        if len(buyer_orders) == 1 and order.amount > 500:
            score += 25

        cutoff = self._clock() - timedelta(hours=24)
        if sum(1 for o in buyer_orders if o.created_at > cutoff) > 5:
            score += 20

        seller_orders = self.ledger.for_wallet(order.seller_address, "seller")
        if seller_orders:
            disputed = sum(1 for o in seller_orders if o.status == "DISPUTED")
            if disputed / len(seller_orders) > 0.2:
                score += 30
        return _clamp(score)

    @staticmethod
    def chain_consistency_score(status: str, events: List[ChainEvent]) -> int:
        names = {e.event_name for e in events}
        score = 0
        expected = EXPECTED_EVENT_FOR_STATUS.get(status)
        if expected and expected not in names:
            score += 40
        if status == "COMPLETED" and "FundsReleased" not in names:
            score += 50
        return _clamp(score)

    # ---------------------------
    # Scan
    # ---------------------------

    def perform_deep_scan(self, order_id: str) -> DeepScanResult:
        order = self.ledger.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        key = canonical_order_key(order.order_id)
        events = [e for e in self.chain_reader.scan_recent(self.block_window) if e.order_key == key]

        factors = {
            "timing": self.timing_score(events),
            "value": self.value_score(float(order.amount or 0)),
            "pattern": self.behavioral_score(order),
            "blockchain": self.chain_consistency_score(order.status, events),
        }
        overall = sum(factors.values()) / len(factors)

        findings, recommendations = [], []
        for name, score in factors.items():
            if score > FINDING_THRESHOLD:
                finding, recommendation = FACTOR_FINDINGS[name]
                findings.append(finding)
                recommendations.append(recommendation)

        result = DeepScanResult(
            order_id=order.order_id,
            overall=overall,
            factors=factors,
            findings=findings,
            recommendations=recommendations,
            confidence=max(60, min(95, 100 - 10 * len(findings))),
        )

        self.store.record(
            "fraud_detection", "warning" if overall > FINDING_THRESHOLD else "info",
            metadata={
                "orderId": order.order_id,
                "deepScan": True,
                "riskScore": overall,
                "factors": factors,
                "findings": len(findings),
            },
        )
        return result
