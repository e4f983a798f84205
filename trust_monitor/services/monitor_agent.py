# trust_monitor/services/monitor_agent.py
import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from prometheus_client import Counter, Histogram

from trust_monitor.models import db
from trust_monitor.services.audit_store import AuditStore
from trust_monitor.services.cadence import Cadence
from trust_monitor.services.chain_reader import ChainEvent, ChainLogReader
from trust_monitor.services.cycle_guard import DEFAULT_LOCK_TIMEOUT, RedisCycleGuard
from trust_monitor.services.deep_scan import DEFAULT_MIN_VALUE_WEI, DeepScanner, PaymentGate
from trust_monitor.services.endpoint_prober import EndpointProber
from trust_monitor.services.order_ledger import OrderLedger
from trust_monitor.services.reconciliation import DEFAULT_BLOCK_WINDOW, ReconciliationEngine
from trust_monitor.services.report import ReportBuilder
from trust_monitor.services.risk_engine import RiskScoringEngine
from trust_monitor.services.web3_client import make_w3

logger = logging.getLogger(__name__)

EXTENSION_KEY = "trust_monitor"

CYCLES = Counter("trust_monitor_cycles_total", "Monitor cycles completed", ["kind"])
STEP_FAILURES = Counter("trust_monitor_step_failures_total", "Monitor cycle steps that failed", ["step"])
CYCLE_SECONDS = Histogram("trust_monitor_cycle_seconds", "Wall time of one monitor cycle")

_STEP_CATEGORY = {
    "health": "health_check",
    "scan_events": "contract_scan",
    "reconcile": "contract_scan",
    "fraud": "fraud_detection",
}


def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None


@dataclass
class CycleSummary:
    kind: str  # tick|full
    started_at: datetime
    finished_at: Optional[datetime] = None
    steps: List[str] = field(default_factory=list)
    health: List[dict] = field(default_factory=list)
    events_scanned: Optional[int] = None
    mismatches: List[dict] = field(default_factory=list)
    fraud_patterns: List[dict] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "steps": list(self.steps),
            "health": self.health,
            "eventsScanned": self.events_scanned,
            "mismatches": self.mismatches,
            "fraudPatterns": self.fraud_patterns,
            "errors": dict(self.errors),
            "skipped": self.skipped,
        }


class TrustMonitor:
    """
    Scheduler for the monitoring agent.

    Threading model:
      - one daemon thread runs _run_loop(), one cycle at a time;
      - manual runs (run_full_cycle) share _cycle_lock with the loop, so
        cycles never overlap;
      - stop() waits for the in-flight cycle and is a no-op when stopped;
      - with a RedisCycleGuard (celery driver) the same holds across
        processes, and cadence marks live in Redis.

    Every tick runs the health checks. Event scanning plus reconciliation and
    the fraud sweep are gated by their own Cadence.
    """

    def __init__(
        self,
        *,
        store: AuditStore,
        prober: EndpointProber,
        chain_reader: ChainLogReader,
        reconciler: ReconciliationEngine,
        risk_engine: RiskScoringEngine,
        report_builder: ReportBuilder,
        payment_gate: Optional[PaymentGate] = None,
        deep_scanner: Optional[DeepScanner] = None,
        app=None,
        interval_seconds: float = 30,
        reconcile_every: timedelta = timedelta(minutes=5),
        fraud_every: timedelta = timedelta(minutes=15),
        scan_window: Optional[int] = None,
        guard: Optional[RedisCycleGuard] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.prober = prober
        self.chain_reader = chain_reader
        self.reconciler = reconciler
        self.risk_engine = risk_engine
        self.report_builder = report_builder
        self.payment_gate = payment_gate
        self.deep_scanner = deep_scanner

        self.app = app
        self.interval_seconds = interval_seconds
        # one scan per cycle, sized for reconciliation
        self.scan_window = scan_window or getattr(reconciler, "block_window", DEFAULT_BLOCK_WINDOW)
        self.guard = guard
        self._clock = clock
        self.cadences = {
            "reconcile": Cadence("reconcile", reconcile_every),
            "fraud": Cadence("fraud", fraud_every),
        }

        self.cycles_completed = 0
        self.last_cycle: Optional[CycleSummary] = None

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._cycle_lock = threading.Lock()

    # ---------------------------
    # Lifecycle
    # ---------------------------

    @property
    def is_running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def start(self) -> bool:
        with self._lock:
            if self.is_running:
                logger.info("Trust monitor already running")
                return False
            # the first tick after a start runs every tier
            for cadence in self.cadences.values():
                cadence.last_run = None
            self._stop.clear()
            self._thread = threading.Thread(target=self._run_loop, name="trust-monitor", daemon=True)
            self._thread.start()
        logger.info("Trust monitor started with %ss interval", self.interval_seconds)
        return True

    def stop(self) -> bool:
        with self._lock:
            t = self._thread
            if t is None:
                return False
            self._stop.set()
        # No timeout: the in-flight cycle finishes before the thread is released.
        if t is not threading.current_thread():
            t.join()
        with self._lock:
            self._thread = None
        logger.info("Trust monitor stopped")
        return True

    def _context(self):
        return self.app.app_context() if self.app is not None else contextlib.nullcontext()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                with self._context():
                    self.tick()
            except Exception:
                logger.exception("Monitor tick crashed outside the cycle guard")
            self._stop.wait(timeout=self.interval_seconds)

    # ---------------------------
    # Cycles
    # ---------------------------

    def tick(self, now: Optional[datetime] = None) -> CycleSummary:
        """One scheduler tick: light checks always, heavier tiers when their cadence is due."""
        return self._run_cycle("tick", now or self._clock(), force=False)

    def run_full_cycle(self, now: Optional[datetime] = None) -> CycleSummary:
        return self._run_cycle("full", now or self._clock(), force=True)

    def _run_cycle(self, kind: str, now: datetime, force: bool) -> CycleSummary:
        with self._cycle_lock:
            if self.guard is None:
                return self._cycle(kind, now, force)

            # ticks give way to a cycle running in another process, manual runs wait for it
            with self.guard.hold(wait=force) as acquired:
                if not acquired:
                    logger.info("Monitor %s skipped: cycle lock held by another process", kind)
                    return CycleSummary(kind=kind, started_at=now, finished_at=now, skipped=True)
                self.guard.load_cadences(self.cadences)
                try:
                    return self._cycle(kind, now, force)
                finally:
                    self.guard.save_cadences(self.cadences)

    def _cycle(self, kind: str, now: datetime, force: bool) -> CycleSummary:
        summary = CycleSummary(kind=kind, started_at=now)
        started = time.monotonic()
        try:
            self._step(summary, "health", self._health)

            reconcile = self.cadences["reconcile"]
            if force or reconcile.due(now):
                events = self._step(summary, "scan_events", self._scan_events)
                if events is not None:
                    self._step(summary, "reconcile", lambda s: self._reconcile(s, events))
                reconcile.mark(now)

            fraud = self.cadences["fraud"]
            if force or fraud.due(now):
                self._step(summary, "fraud", self._fraud_sweep)
                fraud.mark(now)
        except Exception as e:
            summary.errors["cycle"] = str(e)
            logger.exception("Monitor %s aborted", kind)
            self._record_failure("cycle", e)

        summary.finished_at = self._clock()
        CYCLE_SECONDS.observe(time.monotonic() - started)
        CYCLES.labels(kind=kind).inc()
        self.cycles_completed += 1
        self.last_cycle = summary
        return summary

    def _step(self, summary: CycleSummary, name: str, fn: Callable[[CycleSummary], Any]) -> Any:
        """Run one step; a failure is recorded and returns None."""
        summary.steps.append(name)
        try:
            return fn(summary)
        except Exception as e:
            summary.errors[name] = str(e)
            STEP_FAILURES.labels(step=name).inc()
            logger.warning("Monitor step %s failed: %s", name, e)
            self._record_failure(name, e)
            return None

    def _record_failure(self, step: str, exc: Exception) -> None:
        try:
            db.session.rollback()
            self.store.record(
                _STEP_CATEGORY.get(step, "health_check"), "error",
                error=str(exc),
                metadata={"step": step, "exception": type(exc).__name__},
            )
        except Exception:
            # store unreachable: the operational log is all we have
            logger.exception("Could not record failure of step %s", step)

    def _health(self, summary: CycleSummary) -> None:
        summary.health = [r.to_dict() for r in self.prober.run_health_checks()]

    def _scan_events(self, summary: CycleSummary) -> List[ChainEvent]:
        events = self.chain_reader.scan_recent(self.scan_window)
        summary.events_scanned = len(events)
        return events

    def _reconcile(self, summary: CycleSummary, events: List[ChainEvent]) -> None:
        summary.mismatches = [m.to_dict() for m in self.reconciler.detect_mismatches(events=events)]

    def _fraud_sweep(self, summary: CycleSummary) -> None:
        summary.fraud_patterns = [p.to_dict() for p in self.risk_engine.detect_fraud_patterns()]

    # ---------------------------
    # Reporting
    # ---------------------------

    def generate_report(self) -> dict:
        return self.report_builder.build()

    def status(self) -> dict:
        last = self.last_cycle
        return {
            "running": self.is_running,
            "intervalSeconds": self.interval_seconds,
            "cyclesCompleted": self.cycles_completed,
            "lastCycleStartedAt": _iso(last.started_at) if last else None,
            "lastCycleFinishedAt": _iso(last.finished_at) if last else None,
            "cadences": {
                name: {"everySeconds": int(c.every.total_seconds()), "lastRun": _iso(c.last_run)}
                for name, c in self.cadences.items()
            },
        }


def build_monitor(app) -> TrustMonitor:
    cfg = app.config
    store = AuditStore(retention_days=cfg.get("AUDIT_LOG_RETENTION_DAYS", 30))
    ledger = OrderLedger()
    chain_reader = ChainLogReader(
        store,
        cfg.get("ESCROW_ADDRESS"),
        w3_factory=lambda: make_w3(cfg.get("WEB3_PROVIDER_URI"), cfg.get("WEB3_USE_POA")),
    )
    guard = None
    if cfg.get("MONITOR_DRIVER", "thread") == "celery":
        guard = RedisCycleGuard.from_url(
            cfg.get("CELERY_BROKER_URL"),
            lock_timeout=cfg.get("MONITOR_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT),
        )
    return TrustMonitor(
        store=store,
        prober=EndpointProber(store, base_url=cfg.get("MARKETPLACE_API_URL", "http://localhost:8080")),
        chain_reader=chain_reader,
        reconciler=ReconciliationEngine(ledger, chain_reader, store),
        risk_engine=RiskScoringEngine(ledger, store),
        report_builder=ReportBuilder(store, ledger),
        payment_gate=PaymentGate(
            chain_reader,
            store,
            receiver=cfg.get("PLATFORM_RECEIVER_WALLET"),
            token=cfg.get("DEEP_SCAN_TOKEN", "USDC"),
            min_value_wei=cfg.get("DEEP_SCAN_MIN_VALUE_WEI", DEFAULT_MIN_VALUE_WEI),
        ),
        deep_scanner=DeepScanner(ledger, chain_reader, store),
        app=app,
        interval_seconds=cfg.get("MONITOR_INTERVAL_SECONDS", 30),
        reconcile_every=timedelta(seconds=cfg.get("MONITOR_RECONCILE_EVERY_SECONDS", 300)),
        fraud_every=timedelta(seconds=cfg.get("MONITOR_FRAUD_EVERY_SECONDS", 900)),
        guard=guard,
    )


def init_app(app) -> TrustMonitor:
    monitor = build_monitor(app)
    app.extensions[EXTENSION_KEY] = monitor
    if app.config.get("MONITOR_AUTOSTART") and app.config.get("MONITOR_DRIVER", "thread") == "thread":
        monitor.start()
    return monitor


def get_monitor(app=None) -> TrustMonitor:
    return (app or current_app).extensions[EXTENSION_KEY]
