# trust_monitor/services/audit_store.py
import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from trust_monitor.models import db, AuditLog, AuditAlert, ConsumedPayment, RiskScore
from trust_monitor.models.audit_log import LOG_CATEGORIES, LOG_SEVERITIES
from trust_monitor.models.audit_alert import (
    ACTIVE_STATUSES,
    ALERT_SEVERITIES,
    ALERT_STATUSES,
    ALERT_TYPES,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
RESOLVING_STATUSES = ("resolved", "false_positive")


class AuditStore:
    """
    Access layer over the monitor tables.

    - audit_logs: append-only, only visible inside the retention window
    - audit_alerts: created once per active fingerprint, changed only by resolve_alert()
    - risk_scores: one row per wallet, written with a single upsert statement
    - consumed_payments: payment tx hashes already redeemed, insert-only
    """

    def __init__(
        self,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    # ---------------------------
    # Audit log
    # ---------------------------

    def record(self, category: str, severity: str = "info", **fields: Any) -> AuditLog:
        if category not in LOG_CATEGORIES:
            raise ValueError(f"Unknown audit log category: {category}")
        if severity not in LOG_SEVERITIES:
            raise ValueError(f"Unknown audit log severity: {severity}")

        entry = AuditLog(
            timestamp=fields.pop("timestamp", None) or self._clock(),
            category=category,
            severity=severity,
            details=fields.pop("metadata", None),
            **fields,
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    def _retention_cutoff(self) -> datetime:
        return self._clock() - self.retention

    def logs_since(self, since: datetime) -> List[AuditLog]:
        cutoff = max(since, self._retention_cutoff())
        return AuditLog.query.filter(AuditLog.timestamp >= cutoff).all()

    def query_logs(
        self,
        page: int = 1,
        limit: int = 50,
        category: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Tuple[List[AuditLog], int]:
        q = AuditLog.query.filter(AuditLog.timestamp >= self._retention_cutoff())
        if category:
            q = q.filter(AuditLog.category == category)
        if severity:
            q = q.filter(AuditLog.severity == severity)

        total = q.count()
        items = (
            q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def purge_expired(self) -> int:
        deleted = (
            AuditLog.query.filter(AuditLog.timestamp < self._retention_cutoff())
            .delete(synchronize_session=False)
        )
        db.session.commit()
        if deleted:
            logger.info("Purged %s audit log entries past retention", deleted)
        return deleted

    # ---------------------------
    # Alerts
    # ---------------------------

    def active_alert(self, fingerprint: str) -> Optional[AuditAlert]:
        return (
            AuditAlert.query.filter(
                AuditAlert.fingerprint == fingerprint,
                AuditAlert.status.in_(ACTIVE_STATUSES),
            )
            .order_by(AuditAlert.id.desc())
            .first()
        )

    def raise_alert(
        self,
        fingerprint: str,
        *,
        type: str,
        title: str,
        description: str,
        severity: str,
        **fields: Any,
    ) -> Tuple[AuditAlert, bool]:
        """
        Create an alert unless one with the same fingerprint is still open or
        under investigation. Returns (alert, created).

        A repeat at a higher severity escalates the active alert in place
        (severity, description, metadata, recommended action); a repeat at
        the same or lower severity leaves it untouched.
        """
        if type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type: {type}")
        if severity not in ALERT_SEVERITIES:
            raise ValueError(f"Unknown alert severity: {severity}")
        if type == "mismatch" and not fields.get("order_id"):
            raise ValueError("Mismatch alerts must reference an order")

        existing = self.active_alert(fingerprint)
        if existing is not None:
            if ALERT_SEVERITIES.index(severity) > ALERT_SEVERITIES.index(existing.severity):
                self._escalate(existing, title, description, severity, fields)
            return existing, False

        now = self._clock()
        digest = hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()[:12]
        alert = AuditAlert(
            alert_id=f"{type}-{digest}-{uuid.uuid4().hex[:8]}",
            fingerprint=fingerprint,
            type=type,
            title=title,
            description=description,
            severity=severity,
            status="open",
            details=fields.pop("metadata", None),
            created_at=now,
            updated_at=now,
            **fields,
        )
        db.session.add(alert)
        db.session.commit()
        logger.info("Alert raised %s (%s/%s): %s", alert.alert_id, type, severity, title)
        return alert, True

    def _escalate(self, alert: AuditAlert, title: str, description: str, severity: str, fields: Dict[str, Any]) -> None:
        previous = alert.severity
        alert.severity = severity
        alert.title = title
        alert.description = description
        if "metadata" in fields:
            alert.details = fields["metadata"]
        if fields.get("recommended_action"):
            alert.recommended_action = fields["recommended_action"]
        alert.updated_at = self._clock()
        db.session.commit()
        logger.info("Alert %s escalated %s -> %s", alert.alert_id, previous, severity)

    def resolve_alert(self, alert_id: str, status: str, resolved_by: Optional[str] = None) -> Optional[AuditAlert]:
        if status not in ALERT_STATUSES:
            raise ValueError(f"Invalid alert status: {status}")

        alert = AuditAlert.query.filter_by(alert_id=alert_id).first()
        if alert is None:
            return None

        alert.status = status
        alert.resolved_by = resolved_by
        alert.resolved_at = self._clock() if status in RESOLVING_STATUSES else None
        db.session.commit()
        return alert

    def query_alerts(self, status: Optional[str] = "open", severity: Optional[str] = None, limit: int = 100) -> List[AuditAlert]:
        q = AuditAlert.query
        if status:
            q = q.filter(AuditAlert.status == status)
        if severity:
            q = q.filter(AuditAlert.severity == severity)
        return q.order_by(AuditAlert.created_at.desc(), AuditAlert.id.desc()).limit(limit).all()

    def alerts_since(self, since: datetime) -> List[AuditAlert]:
        return AuditAlert.query.filter(AuditAlert.created_at >= since).all()

    # ---------------------------
    # Risk scores
    # ---------------------------

    def upsert_risk_score(
        self,
        wallet_address: str,
        *,
        user_type: str,
        risk_score: int,
        risk_level: str,
        factors: Dict[str, Any],
    ) -> RiskScore:
        values = {
            "wallet_address": wallet_address,
            "user_type": user_type,
            "risk_score": risk_score,
            "risk_level": risk_level,
            "factors": factors,
            "flagged": risk_score >= 70,
            "last_updated": self._clock(),
        }
        dialect = db.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(RiskScore).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(RiskScore).values(**values)
        else:
            raise RuntimeError(f"Risk score upsert not supported on dialect '{dialect}'")

        update_cols = {k: stmt.excluded[k] for k in values if k != "wallet_address"}
        stmt = stmt.on_conflict_do_update(index_elements=["wallet_address"], set_=update_cols)
        db.session.execute(stmt)
        db.session.commit()

        return RiskScore.query.filter_by(wallet_address=wallet_address).populate_existing().one()

    def get_risk_score(self, wallet_address: str) -> Optional[RiskScore]:
        return RiskScore.query.filter_by(wallet_address=wallet_address).first()

    def query_risk_scores(
        self,
        flagged: Optional[bool] = None,
        user_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[RiskScore]:
        q = RiskScore.query
        if flagged is not None:
            q = q.filter(RiskScore.flagged == flagged)
        if user_type:
            q = q.filter(RiskScore.user_type == user_type)
        return q.order_by(RiskScore.risk_score.desc(), RiskScore.wallet_address).limit(limit).all()

    def top_flagged(self, limit: int = 10) -> List[RiskScore]:
        return self.query_risk_scores(flagged=True, limit=limit)

    # ---------------------------
    # Paid features
    # ---------------------------

    def payment_consumed(self, tx_hash: str) -> bool:
        return ConsumedPayment.query.filter_by(tx_hash=tx_hash.lower()).first() is not None

    def consume_payment(self, tx_hash: str, feature: str) -> bool:
        """Mark a payment as redeemed. False if it already was (the unique index decides races)."""
        db.session.add(ConsumedPayment(tx_hash=tx_hash.lower(), feature=feature, consumed_at=self._clock()))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True
