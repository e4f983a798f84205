# trust_monitor/models/risk_score.py
from datetime import datetime
from trust_monitor.models import db
from trust_monitor.models.types import JSONBCompat

USER_TYPES = ("buyer", "seller")
RISK_LEVELS = ("low", "medium", "high", "critical")


class RiskScore(db.Model):
    __tablename__ = "risk_scores"

    id = db.Column(db.Integer, primary_key=True)
    wallet_address = db.Column(db.String(42), nullable=False, unique=True, index=True)
    user_type = db.Column(db.String(10), nullable=False)
    risk_score = db.Column(db.Integer, nullable=False, index=True)   # 0..100
    risk_level = db.Column(db.String(10), nullable=False, index=True)
    factors = db.Column(JSONBCompat(), nullable=True)
    flagged = db.Column(db.Boolean, nullable=False, default=False, index=True)  # risk_score >= 70
    last_updated = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_risk_scores_range"),
    )
