# trust_monitor/models/audit_alert.py
from datetime import datetime
from trust_monitor.models import db
from trust_monitor.models.types import JSONBCompat

ALERT_TYPES = ("mismatch", "fraud", "downtime", "performance", "security")
ALERT_SEVERITIES = ("low", "medium", "high", "critical")
ALERT_STATUSES = ("open", "investigating", "resolved", "false_positive")
ACTIVE_STATUSES = ("open", "investigating")


class AuditAlert(db.Model):
    __tablename__ = "audit_alerts"

    id = db.Column(db.Integer, primary_key=True)
    alert_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    fingerprint = db.Column(db.String(255), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(10), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="open", index=True)

    order_id = db.Column(db.String(128), nullable=True, index=True)
    wallet_address = db.Column(db.String(42), nullable=True, index=True)
    contract_address = db.Column(db.String(42), nullable=True)
    details = db.Column("metadata", JSONBCompat(), nullable=True)
    recommended_action = db.Column(db.Text, nullable=True)

    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
