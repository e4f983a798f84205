# trust_monitor/services/cadence.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class Cadence:
    """How often a tier of monitoring work runs, and when it last ran."""

    name: str
    every: timedelta
    last_run: Optional[datetime] = None

    def due(self, now: datetime) -> bool:
        if self.last_run is None:
            return True
        return now - self.last_run >= self.every

    def mark(self, now: datetime) -> None:
        self.last_run = now
