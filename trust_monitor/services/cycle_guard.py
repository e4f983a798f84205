# trust_monitor/services/cycle_guard.py
import contextlib
import logging
from datetime import datetime
from typing import Dict, Iterator

import redis
from redis.exceptions import LockError

from trust_monitor.services.cadence import Cadence

logger = logging.getLogger(__name__)

LOCK_KEY = "trust_monitor:cycle-lock"
CADENCE_KEY = "trust_monitor:cadence"
DEFAULT_LOCK_TIMEOUT = 600


class RedisCycleGuard:
    """
    Cross-process guard for MONITOR_DRIVER=celery.

    Every worker process builds its own TrustMonitor, so the in-process
    _cycle_lock and Cadence.last_run are not enough there. This keeps one
    lock and the cadence marks in Redis (the Celery broker), shared by all
    workers and by the web process answering /run.
    """

    def __init__(self, client, lock_timeout: int = DEFAULT_LOCK_TIMEOUT):
        self.client = client
        self.lock_timeout = lock_timeout

    @classmethod
    def from_url(cls, url: str, lock_timeout: int = DEFAULT_LOCK_TIMEOUT) -> "RedisCycleGuard":
        return cls(redis.Redis.from_url(url, decode_responses=True), lock_timeout=lock_timeout)

    @contextlib.contextmanager
    def hold(self, wait: bool) -> Iterator[bool]:
        """Yields True while holding the lock, False when another process has it."""
        lock = self.client.lock(LOCK_KEY, timeout=self.lock_timeout)
        acquired = lock.acquire(blocking=wait, blocking_timeout=self.lock_timeout if wait else None)
        if not acquired:
            yield False
            return
        try:
            yield True
        finally:
            try:
                lock.release()
            except LockError:
                # expired while the cycle ran: another process may already be in
                logger.warning("Cycle lock expired before release (timeout=%ss)", self.lock_timeout)

    def load_cadences(self, cadences: Dict[str, Cadence]) -> None:
        marks = self.client.hgetall(CADENCE_KEY) or {}
        for name, cadence in cadences.items():
            raw = marks.get(name)
            cadence.last_run = datetime.fromisoformat(raw) if raw else None

    def save_cadences(self, cadences: Dict[str, Cadence]) -> None:
        marks = {name: c.last_run.isoformat() for name, c in cadences.items() if c.last_run is not None}
        if marks:
            self.client.hset(CADENCE_KEY, mapping=marks)
