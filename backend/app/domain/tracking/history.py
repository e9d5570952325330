"""
History ledger: bounded, time-ordered sequence of past fixes.

The ledger is a ring buffer. Loading more fixes than capacity keeps only
the newest, so the length bound holds by construction.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, List, Optional


@dataclass(frozen=True)
class HistoryFix:
    """One past position sample."""
    latitude: float
    longitude: float
    recorded_at: datetime
    speed: float = 0.0
    heading: float = 0.0
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    source: str = "gps"
    quality: str = "good"


class HistoryLedger:
    """Oldest-first ring of HistoryFix entries."""

    def __init__(self, capacity: int = 1000, fixes: Iterable[HistoryFix] = ()):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._fixes = deque(fixes, maxlen=capacity)

    def __len__(self) -> int:
        return len(self._fixes)

    def __iter__(self) -> Iterator[HistoryFix]:
        return iter(self._fixes)

    def __getitem__(self, index: int) -> HistoryFix:
        return self._fixes[index]

    def window(self, size: int) -> List[HistoryFix]:
        """The most recent `size` fixes, oldest first."""
        if size <= 0:
            return []
        if size >= len(self._fixes):
            return list(self._fixes)
        return list(self._fixes)[-size:]
