# trust_monitor/models/consumed_payment.py
from datetime import datetime
from trust_monitor.models import db


class ConsumedPayment(db.Model):
    """A payment tx hash already redeemed for a paid feature. One row per hash, kept forever."""

    __tablename__ = "consumed_payments"

    id = db.Column(db.Integer, primary_key=True)
    tx_hash = db.Column(db.String(66), nullable=False, unique=True, index=True)  # lowercase
    feature = db.Column(db.String(50), nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
