# trust_monitor/models/audit_log.py
from datetime import datetime
from trust_monitor.models import db
from trust_monitor.models.types import JSONBCompat

LOG_CATEGORIES = ("health_check", "endpoint_test", "contract_scan", "fraud_detection")
LOG_SEVERITIES = ("info", "warning", "error", "critical")


class AuditLog(db.Model):
    """Append-only monitoring event. Rows past the retention window are purged, never edited."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    category = db.Column(db.String(32), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default="info", index=True)

    # HTTP probe
    endpoint = db.Column(db.String(255), nullable=True)
    method = db.Column(db.String(10), nullable=True)
    status_code = db.Column(db.Integer, nullable=True)
    latency_ms = db.Column(db.Float, nullable=True)
    error = db.Column(db.Text, nullable=True)

    # Chain
    contract_address = db.Column(db.String(42), nullable=True)
    block_number = db.Column(db.BigInteger, nullable=True)
    event_name = db.Column(db.String(64), nullable=True)

    # "metadata" is reserved on declarative models
    details = db.Column("metadata", JSONBCompat(), nullable=True)
