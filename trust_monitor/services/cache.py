# trust_monitor/services/cache.py
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

_MISSING = object()


class TTLCache:
    """
    Small key/value cache with per-entry expiry.

    Nothing is evicted behind the caller's back: expired entries are simply
    invisible to ``get`` and are dropped when ``evict_expired`` runs.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], datetime] = datetime.utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._data: Dict[Hashable, Tuple[datetime, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            return default
        expires_at, value = entry
        if expires_at <= self._clock():
            return default
        return value

    def put(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.ttl if ttl is None else timedelta(seconds=ttl)
        with self._lock:
            self._data[key] = (self._clock() + lifetime, value)

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
            for k in expired:
                del self._data[k]
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)
