# trust_monitor/services/risk_engine.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

from trust_monitor.services.risk_rules import (
    BASE_SCORE,
    FLAG_THRESHOLD,
    RULESET_V1,
    VELOCITY_WINDOW_DAYS,
    RiskFactors,
    RuleSet,
    risk_level,
)

logger = logging.getLogger(__name__)

REPEATED_DISPUTES_MIN = 3
RAPID_REFUNDS_MIN = 2
RAPID_REFUND_MAX_AVG_DAYS = 2.0


@dataclass
class RiskAssessment:
    wallet_address: str
    user_type: str
    score: int
    level: str
    flagged: bool
    factors: RiskFactors
    rules_fired: List[str] = field(default_factory=list)


@dataclass
class FraudPattern:
    type: str  # repeated_disputes|rapid_refunds
    wallet_address: str
    confidence: int
    evidence: List[str]
    risk_score: int

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "walletAddress": self.wallet_address,
            "confidence": self.confidence,
            "evidence": self.evidence,
            "riskScore": self.risk_score,
        }


class RiskScoringEngine:
    def __init__(
        self,
        ledger,
        store,
        ruleset: RuleSet = RULESET_V1,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.ruleset = ruleset
        self._clock = clock

    def _factors(self, orders) -> RiskFactors:
        now = self._clock()
        n = len(orders)
        first = min(o.created_at for o in orders)
        velocity_cutoff = now - timedelta(days=VELOCITY_WINDOW_DAYS)
        return RiskFactors(
            dispute_rate=sum(1 for o in orders if o.status == "DISPUTED") / n,
            refund_rate=sum(1 for o in orders if o.status == "REFUNDED") / n,
            order_count=n,
            avg_order_value=sum(float(o.amount or 0) for o in orders) / n,
            account_age_days=(now - first).days,
            recent_orders=sum(1 for o in orders if o.created_at > velocity_cutoff),
        )

    def assess_wallet(self, wallet_address: str, user_type: str = "buyer") -> RiskAssessment:
        wallet_address = wallet_address.lower()
        orders = self.ledger.for_wallet(wallet_address, user_type)

        if not orders:
            factors = RiskFactors()
            score, fired = BASE_SCORE, []
        else:
            factors = self._factors(orders)
            score, fired, labels = self.ruleset.evaluate(factors)
            factors.suspicious_patterns = labels

        assessment = RiskAssessment(
            wallet_address=wallet_address,
            user_type=user_type,
            score=score,
            level=risk_level(score),
            flagged=score >= FLAG_THRESHOLD,
            factors=factors,
            rules_fired=fired,
        )

        self.store.upsert_risk_score(
            wallet_address,
            user_type=user_type,
            risk_score=assessment.score,
            risk_level=assessment.level,
            factors={**factors.to_dict(), "ruleset": self.ruleset.version, "rulesFired": fired},
        )
        if assessment.flagged:
            self._raise_alert(assessment)
        return assessment

    def score_wallet(self, wallet_address: str, user_type: str = "buyer") -> int:
        return self.assess_wallet(wallet_address, user_type).score

    def _raise_alert(self, a: RiskAssessment) -> None:
        patterns = ", ".join(a.factors.suspicious_patterns) or "none"
        self.store.raise_alert(
            f"fraud:{a.wallet_address}",
            type="fraud",
            title=f"High Risk {a.user_type} Detected",
            description=f"Wallet {a.wallet_address} has risk score {a.score}. Patterns: {patterns}",
            severity="critical" if a.score >= 80 else "high",
            wallet_address=a.wallet_address,
            metadata={"riskScore": a.score, "factors": a.factors.to_dict()},
            recommended_action="Suspend account pending review" if a.score >= 80 else "Monitor closely",
        )

    def detect_fraud_patterns(self) -> List[FraudPattern]:
        patterns: List[FraudPattern] = []

        for wallet, count in self.ledger.disputed_wallets(REPEATED_DISPUTES_MIN):
            patterns.append(FraudPattern(
                type="repeated_disputes",
                wallet_address=wallet,
                confidence=min(100, count * 20),
                evidence=[f"{count} disputed orders"],
                risk_score=self.score_wallet(wallet, "buyer"),
            ))

        for wallet, refunds in self.ledger.refunded_wallets(RAPID_REFUNDS_MIN).items():
            avg_days = sum(
                (o.updated_at - o.created_at).total_seconds() / 86400 for o in refunds
            ) / len(refunds)
            if avg_days >= RAPID_REFUND_MAX_AVG_DAYS:
                continue
            patterns.append(FraudPattern(
                type="rapid_refunds",
                wallet_address=wallet,
                confidence=80,
                evidence=[f"{len(refunds)} refunds averaging {avg_days:.1f} days"],
                risk_score=self.score_wallet(wallet, "buyer"),
            ))

        logger.info("Fraud sweep: %s patterns", len(patterns))
        return patterns
