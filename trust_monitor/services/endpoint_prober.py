# trust_monitor/services/endpoint_prober.py
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

import requests

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10

DEFAULT_ENDPOINTS: Tuple[Tuple[str, str], ...] = (
    ("/health", "GET"),
    ("/api/products", "GET"),
    ("/api/orders", "GET"),
)


@dataclass
class HealthCheckResult:
    endpoint: str
    method: str
    status: str  # up|down|degraded
    latency_ms: float
    status_code: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "status": self.status,
            "latencyMs": round(self.latency_ms, 2),
            "statusCode": self.status_code,
            "error": self.error,
            "timestamp": self.timestamp.isoformat() + "Z",
        }


_SEVERITY_BY_STATUS = {"up": "info", "degraded": "warning", "down": "error"}


class EndpointProber:
    """HTTP self-checks against the marketplace API."""

    def __init__(
        self,
        store,
        base_url: str = "http://localhost:8080",
        endpoints: Sequence[Tuple[str, str]] = DEFAULT_ENDPOINTS,
        timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.endpoints = list(endpoints)
        self.timeout = timeout

    def _request(self, endpoint: str, method: str = "GET", body: Any = None) -> HealthCheckResult:
        url = f"{self.base_url}{endpoint}"
        started = time.monotonic()
        try:
            resp = requests.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            latency = (time.monotonic() - started) * 1000
            return HealthCheckResult(endpoint, method, "down", latency, error=str(e))

        latency = (time.monotonic() - started) * 1000
        status = "up" if resp.status_code < 400 else "degraded"
        return HealthCheckResult(endpoint, method, status, latency, status_code=resp.status_code)

    def _record(self, result: HealthCheckResult) -> HealthCheckResult:
        self.store.record(
            "endpoint_test", _SEVERITY_BY_STATUS[result.status],
            timestamp=result.timestamp,
            endpoint=result.endpoint,
            method=result.method,
            status_code=result.status_code,
            latency_ms=result.latency_ms,
            error=result.error,
        )
        if result.status == "down":
            logger.warning("Probe %s %s down: %s", result.method, result.endpoint, result.error)
        return result

    def probe(self, endpoint: str, method: str = "GET", body: Any = None) -> HealthCheckResult:
        """Never raises for transport failures: they come back as status=down."""
        return self._record(self._request(endpoint, method, body))

    def run_health_checks(self) -> List[HealthCheckResult]:
        with ThreadPoolExecutor(max_workers=max(1, len(self.endpoints)), thread_name_prefix="probe") as pool:
            futures = [pool.submit(self._request, path, method) for path, method in self.endpoints]
        results = [self._record(f.result()) for f in futures]

        down = sum(1 for r in results if r.status == "down")
        degraded = sum(1 for r in results if r.status == "degraded")
        severity = "error" if down else "warning" if degraded else "info"
        avg_latency = sum(r.latency_ms for r in results) / len(results) if results else 0.0

        self.store.record(
            "health_check", severity,
            latency_ms=avg_latency,
            metadata={
                "totalEndpoints": len(results),
                "downCount": down,
                "degradedCount": degraded,
                "avgResponseTime": round(avg_latency, 2),
            },
        )
        return results
