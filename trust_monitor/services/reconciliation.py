# trust_monitor/services/reconciliation.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from trust_monitor.services.chain_reader import ChainEvent, canonical_order_key

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(hours=24)
DEFAULT_BLOCK_WINDOW = 2000
# COD orders settle off-chain and never touch the escrow
ESCROW_PAYMENT_MODE = "CRYPTO"

# Later entries win: the order reaches the furthest stage it has an event for,
# and Disputed/Refunded override the happy path.
STATUS_PRECEDENCE = (
    ("OrderFunded", "FUNDED"),
    ("OrderShipped", "SHIPPED"),
    ("OrderDelivered", "DELIVERED"),
    ("FundsReleased", "COMPLETED"),
    ("Disputed", "DISPUTED"),
    ("Refunded", "REFUNDED"),
)


@dataclass
class OrderMismatch:
    order_id: str
    backend_status: str
    chain_status: str
    severity: str
    recommended_action: str

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "backendStatus": self.backend_status,
            "blockchainStatus": self.chain_status,
            "severity": self.severity,
            "recommendedAction": self.recommended_action,
        }


def derive_chain_status(events: Iterable[ChainEvent]) -> str:
    names = {e.event_name for e in events}
    status = "CREATED"
    for event_name, derived in STATUS_PRECEDENCE:
        if event_name in names:
            status = derived
    return status


def mismatch_severity(backend_status: str, chain_status: str) -> str:
    if backend_status == "COMPLETED" and chain_status != "COMPLETED":
        return "high"
    if backend_status == "REFUNDED" and chain_status != "REFUNDED":
        return "high"
    if backend_status == "SHIPPED" and chain_status == "FUNDED":
        return "medium"
    return "low"


def group_by_order(events: Iterable[ChainEvent]) -> Dict[str, List[ChainEvent]]:
    grouped: Dict[str, List[ChainEvent]] = {}
    for e in events:
        key = e.order_key
        if key:
            grouped.setdefault(key, []).append(e)
    return grouped


class ReconciliationEngine:
    """
    Compares backend order status with the status implied by escrow events.

    Read-only towards the order ledger: mismatches become alerts and it is up
    to an operator to fix the order.
    """

    def __init__(
        self,
        ledger,
        chain_reader,
        store,
        block_window: int = DEFAULT_BLOCK_WINDOW,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.chain_reader = chain_reader
        self.store = store
        self.block_window = block_window
        self._clock = clock

    def detect_mismatches(
        self,
        lookback: timedelta = DEFAULT_LOOKBACK,
        events: Optional[List[ChainEvent]] = None,
    ) -> List[OrderMismatch]:
        orders = self.ledger.created_since(self._clock() - lookback, payment_mode=ESCROW_PAYMENT_MODE)
        if not orders:
            return []

        if events is None:
            events = self.chain_reader.scan_recent(self.block_window)
        by_order = group_by_order(events)

        mismatches: List[OrderMismatch] = []
        for order in orders:
            chain_status = derive_chain_status(by_order.get(canonical_order_key(order.order_id), []))
            if order.status == chain_status:
                continue

            mismatch = OrderMismatch(
                order_id=order.order_id,
                backend_status=order.status,
                chain_status=chain_status,
                severity=mismatch_severity(order.status, chain_status),
                recommended_action=(
                    f"Update order {order.order_id} status from {order.status} to {chain_status}"
                ),
            )
            mismatches.append(mismatch)
            self._raise_alert(mismatch)

        if mismatches:
            logger.info("Reconciliation: %s mismatches across %s orders", len(mismatches), len(orders))
        return mismatches

    def _raise_alert(self, mismatch: OrderMismatch) -> None:
        self.store.raise_alert(
            f"mismatch:{mismatch.order_id}:{mismatch.backend_status}:{mismatch.chain_status}",
            type="mismatch",
            title="Order Status Mismatch",
            description=(
                f"Order {mismatch.order_id}: backend shows {mismatch.backend_status}, "
                f"blockchain shows {mismatch.chain_status}"
            ),
            severity=mismatch.severity,
            order_id=mismatch.order_id,
            contract_address=getattr(self.chain_reader, "escrow_address", None),
            metadata={
                "backendStatus": mismatch.backend_status,
                "blockchainStatus": mismatch.chain_status,
            },
            recommended_action=mismatch.recommended_action,
        )
