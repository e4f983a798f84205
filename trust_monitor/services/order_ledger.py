# trust_monitor/services/order_ledger.py
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func

from trust_monitor.models import db, Order

ROLE_COLUMNS = {
    "buyer": Order.buyer_address,
    "seller": Order.seller_address,
}


def _norm_wallet(address: str) -> str:
    return (address or "").strip().lower()


class OrderLedger:
    """Read-only queries over the marketplace order table."""

    def get(self, order_id: str) -> Optional[Order]:
        return Order.query.filter_by(order_id=order_id).first()

    def created_since(self, since: datetime, payment_mode: Optional[str] = None) -> List[Order]:
        q = Order.query.filter(Order.created_at >= since)
        if payment_mode:
            q = q.filter(Order.payment_mode == payment_mode)
        return q.order_by(Order.created_at.asc()).all()

    def for_wallet(self, address: str, role: str = "buyer") -> List[Order]:
        column = ROLE_COLUMNS.get(role)
        if column is None:
            raise ValueError(f"Unknown wallet role: {role}")
        return (
            Order.query.filter(func.lower(column) == _norm_wallet(address))
            .order_by(Order.created_at.asc())
            .all()
        )

    def disputed_wallets(self, min_count: int = 3) -> List[Tuple[str, int]]:
        """Buyers with at least ``min_count`` disputed orders, most disputes first."""
        buyer = func.lower(Order.buyer_address)
        rows = (
            db.session.query(buyer, func.count(Order.id))
            .filter(Order.status == "DISPUTED")
            .group_by(buyer)
            .having(func.count(Order.id) >= min_count)
            .order_by(func.count(Order.id).desc())
            .all()
        )
        return [(wallet, int(count)) for wallet, count in rows]

    def refunded_wallets(self, min_count: int = 2) -> Dict[str, List[Order]]:
        """Buyers with at least ``min_count`` refunded orders, with those orders."""
        buyer = func.lower(Order.buyer_address)
        candidates = [
            wallet
            for wallet, in (
                db.session.query(buyer)
                .filter(Order.status == "REFUNDED")
                .group_by(buyer)
                .having(func.count(Order.id) >= min_count)
                .all()
            )
        ]
        if not candidates:
            return {}

        grouped: Dict[str, List[Order]] = defaultdict(list)
        refunded = Order.query.filter(Order.status == "REFUNDED", buyer.in_(candidates)).all()
        for order in refunded:
            grouped[_norm_wallet(order.buyer_address)].append(order)
        return dict(grouped)

    def status_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        q = db.session.query(Order.status, func.count(Order.id))
        if since is not None:
            q = q.filter(Order.created_at >= since)
        return {status: int(count) for status, count in q.group_by(Order.status).all()}
