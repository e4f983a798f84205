# trust_monitor/models/order.py
from datetime import datetime
from trust_monitor.models import db

ORDER_STATUSES = ("CREATED", "FUNDED", "SHIPPED", "DELIVERED", "COMPLETED", "DISPUTED", "REFUNDED")


class Order(db.Model):
    """
    Marketplace order as stored by the marketplace API.
    The monitor only reads this table; it never corrects an order.
    """

    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    buyer_address = db.Column(db.String(42), nullable=False, index=True)
    seller_address = db.Column(db.String(42), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Float, nullable=False)
    token_address = db.Column(db.String(42), nullable=True)
    payment_mode = db.Column(db.String(10), nullable=False, default="CRYPTO")  # CRYPTO|COD
    status = db.Column(db.String(20), nullable=False, default="CREATED", index=True)
    tx_hash = db.Column(db.String(66), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
