# trust_monitor/services/report.py
from datetime import datetime, timedelta
from typing import Callable, Dict, List

REPORT_PERIOD = timedelta(hours=24)
TOP_WALLETS = 10


def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None


def _recommendations(alerts: Dict[str, int], uptime: float, error_rate: float) -> List[str]:
    out = []
    if uptime < 99:
        out.append("Investigate backend stability issues - uptime below 99%")
    if error_rate > 5:
        out.append("High error rate detected - review application logs")
    if alerts["critical"] > 0:
        out.append("Address critical alerts immediately")
    if alerts["high"] > 5:
        out.append("Review high-priority alerts and implement fixes")
    return out


class ReportBuilder:
    """Rolling 24h audit report, assembled from the store and the order ledger on demand."""

    def __init__(self, store, ledger, clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.ledger = ledger
        self._clock = clock

    def build(self) -> dict:
        end = self._clock()
        start = end - REPORT_PERIOD

        logs = self.store.logs_since(start)
        probes = [l for l in logs if l.category == "endpoint_test"]
        up = sum(1 for l in probes if l.status_code is not None and l.status_code < 400)
        uptime = (up / len(probes) * 100) if probes else 100.0
        avg_latency = (sum(l.latency_ms or 0 for l in probes) / len(probes)) if probes else 0.0
        errors = sum(1 for l in logs if l.severity in ("error", "critical"))
        error_rate = errors / max(len(logs), 1) * 100

        alerts = {sev: 0 for sev in ("critical", "high", "medium", "low")}
        for a in self.store.alerts_since(start):
            alerts[a.severity] = alerts.get(a.severity, 0) + 1

        counts = self.ledger.status_counts(since=start)
        total_orders = sum(counts.values())
        settled = counts.get("COMPLETED", 0) + counts.get("REFUNDED", 0) + counts.get("DISPUTED", 0)
        escrow_success = (counts.get("COMPLETED", 0) / settled * 100) if settled else 100.0
        dispute_rate = (counts.get("DISPUTED", 0) / total_orders * 100) if total_orders else 0.0

        top = [
            {"address": r.wallet_address, "riskScore": r.risk_score, "type": r.user_type}
            for r in self.store.top_flagged(TOP_WALLETS)
        ]

        return {
            "reportId": f"audit-{int(end.timestamp() * 1000)}",
            "period": {"start": _iso(start), "end": _iso(end)},
            "metrics": {
                "uptime": round(uptime, 2),
                "avgResponseTime": round(avg_latency),
                "errorRate": round(error_rate, 2),
                "escrowSuccessRate": round(escrow_success, 2),
                "disputeRate": round(dispute_rate, 2),
            },
            "alerts": alerts,
            "topRiskyWallets": top,
            "recommendations": _recommendations(alerts, uptime, error_rate),
            "generatedAt": _iso(end),
        }
