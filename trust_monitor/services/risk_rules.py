# trust_monitor/services/risk_rules.py
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

BASE_SCORE = 50
FLAG_THRESHOLD = 70
HIGH_VALUE_THRESHOLD = 1000
NEW_ACCOUNT_DAYS = 7
VELOCITY_WINDOW_DAYS = 7
VELOCITY_MAX_ORDERS = 10


@dataclass
class RiskFactors:
    dispute_rate: float = 0.0
    refund_rate: float = 0.0
    order_count: int = 0
    avg_order_value: float = 0.0
    account_age_days: int = 0
    recent_orders: int = 0
    suspicious_patterns: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "disputeRate": round(self.dispute_rate, 4),
            "refundRate": round(self.refund_rate, 4),
            "orderCount": self.order_count,
            "avgOrderValue": round(self.avg_order_value, 4),
            "accountAge": self.account_age_days,
            "recentOrders": self.recent_orders,
            "suspiciousPatterns": list(self.suspicious_patterns),
        }


@dataclass(frozen=True)
class RiskRule:
    name: str
    weight: int
    predicate: Callable[[RiskFactors], bool]
    label: Optional[str] = None  # unlabeled rules add weight without naming a pattern


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: Tuple[RiskRule, ...]

    def evaluate(self, factors: RiskFactors, base: int = BASE_SCORE) -> Tuple[int, List[str], List[str]]:
        """Returns (clamped score, triggered rule names, pattern labels)."""
        score = base
        fired, labels = [], []
        for rule in self.rules:
            if rule.predicate(factors):
                score += rule.weight
                fired.append(rule.name)
                if rule.label:
                    labels.append(rule.label)
        return max(0, min(100, score)), fired, labels


RULESET_V1 = RuleSet(
    version="v1",
    rules=(
        RiskRule("dispute_rate_high", 30, lambda f: f.dispute_rate > 0.3, "High dispute rate"),
        RiskRule("dispute_rate_elevated", 15, lambda f: 0.1 < f.dispute_rate <= 0.3),
        RiskRule("refund_rate_high", 25, lambda f: f.refund_rate > 0.2, "High refund rate"),
        RiskRule("new_account", 20, lambda f: f.account_age_days < NEW_ACCOUNT_DAYS, "New account"),
        RiskRule("high_value_orders", 10, lambda f: f.avg_order_value > HIGH_VALUE_THRESHOLD, "High value orders"),
        RiskRule("order_velocity", 15, lambda f: f.recent_orders > VELOCITY_MAX_ORDERS, "High order velocity"),
    ),
)


def risk_level(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"
