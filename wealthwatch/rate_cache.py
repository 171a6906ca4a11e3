from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import threading

FRESHNESS_WINDOW = timedelta(minutes=5)

CurrencyPair = tuple[str, str]


@dataclass(frozen=True)
class RateCacheEntry:
    pair: CurrencyPair
    rate: float
    fetched_at: datetime

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")

    def is_fresh(self, now: datetime, window: timedelta = FRESHNESS_WINDOW) -> bool:
        return now - self.fetched_at < window


class RateCache:
    """Last-known rate per (from, to) pair.

    Lookups use the exact direction requested; a reciprocal is never derived.
    Stale entries stay until a newer fetch overwrites them.
    """

    def __init__(self) -> None:
        self._entries: dict[CurrencyPair, RateCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, pair: CurrencyPair) -> RateCacheEntry | None:
        with self._lock:
            return self._entries.get(pair)

    def put(self, pair: CurrencyPair, rate: float, timestamp: datetime) -> RateCacheEntry:
        entry = RateCacheEntry(pair=pair, rate=float(rate), fetched_at=timestamp)
        with self._lock:
            self._entries[pair] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
