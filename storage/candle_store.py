"""
Candle Store — the cache record for one (symbol, interval) key.
Holds an ordered, de-duplicated candle set plus range metadata and status.

INVARIANT: data_start_time / data_end_time always reflect the current
candle set. An empty store has no range and must not be queried.
"""

from __future__ import annotations
import bisect
import time
from typing import Dict, Iterable, List, Optional
from exchange.models import Candle, CacheStatus, CacheStats, interval_ms
from core.errors import CacheInconsistencyError
import logging

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class CandleStore:
    """In-memory cache record. Mutated only by the CacheManager."""

    def __init__(
        self,
        symbol: str,
        interval: str,
        last_update_time: Optional[int] = None,
        status: CacheStatus = CacheStatus.ACTIVE,
        error_message: Optional[str] = None,
    ):
        interval_ms(interval)  # validate
        self.symbol = symbol
        self.interval = interval
        self.status = status
        self.error_message = error_message
        self.last_update_time = last_update_time if last_update_time is not None else now_ms()

        # open_time -> Candle
        self._by_open: Dict[int, Candle] = {}
        # Sorted views, rebuilt on every mutation
        self._candles: List[Candle] = []
        self._close_times: List[int] = []

    # ==================== Range Metadata ====================

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.interval}"

    @property
    def candle_count(self) -> int:
        return len(self._candles)

    @property
    def is_empty(self) -> bool:
        return not self._candles

    @property
    def data_start_time(self) -> Optional[int]:
        return self._candles[0].open_time if self._candles else None

    @property
    def data_end_time(self) -> Optional[int]:
        return self._candles[-1].close_time if self._candles else None

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    # ==================== Mutation ====================

    def merge(self, candles: Iterable[Candle], now: Optional[int] = None) -> int:
        """
        Insert or overwrite candles keyed by open_time.
        Returns how many open_times were new. Re-merging identical candles
        changes nothing but last_update_time.
        """
        added = 0
        for candle in candles:
            if candle.open_time >= candle.close_time:
                raise ValueError(
                    f"Malformed candle for {self.key}: "
                    f"open_time {candle.open_time} >= close_time {candle.close_time}"
                )
            if candle.open_time not in self._by_open:
                added += 1
            self._by_open[candle.open_time] = candle

        self._rebuild()
        self.last_update_time = now if now is not None else now_ms()
        return added

    def prune_before(self, cutoff: int) -> int:
        """Drop candles whose close_time is older than cutoff. Returns count removed."""
        stale = [c.open_time for c in self._candles if c.close_time < cutoff]
        for open_time in stale:
            del self._by_open[open_time]
        if stale:
            self._rebuild()
        return len(stale)

    def touch(self, now: Optional[int] = None):
        self.last_update_time = now if now is not None else now_ms()

    def _rebuild(self):
        self._candles = [self._by_open[k] for k in sorted(self._by_open)]
        self._close_times = [c.close_time for c in self._candles]

    # ==================== Queries ====================

    def range_query(self, start: int, end: int) -> List[Candle]:
        """Candles whose close_time lies in [start, end], oldest first."""
        if self.is_empty:
            raise CacheInconsistencyError(f"Range query on empty cache record {self.key}")
        lo = bisect.bisect_left(self._close_times, start)
        hi = bisect.bisect_right(self._close_times, end)
        return self._candles[lo:hi]

    def covers_range(self, start: int, end: int) -> bool:
        """
        O(1) coverage check on the stored bounds.
        Interior contiguity is not verified.
        """
        if self.is_empty:
            return False
        return self.data_start_time <= start and self.data_end_time >= end

    def needs_update(self, now: Optional[int] = None) -> bool:
        """Stale once more than one candle duration has passed since the last update."""
        now = now if now is not None else now_ms()
        return (now - self.last_update_time) > interval_ms(self.interval)

    def gaps(self) -> List[tuple]:
        """Interior holes larger than one interval, as (after_close_time, next_open_time)."""
        step = interval_ms(self.interval)
        holes = []
        for prev, curr in zip(self._candles, self._candles[1:]):
            if curr.open_time - prev.open_time > step:
                holes.append((prev.close_time, curr.open_time))
        return holes

    def verify(self):
        """Raise CacheInconsistencyError if ordering or range invariants are broken."""
        for prev, curr in zip(self._candles, self._candles[1:]):
            if curr.open_time <= prev.open_time:
                raise CacheInconsistencyError(
                    f"{self.key}: candles out of order or duplicated at {curr.open_time}"
                )
            if curr.close_time < prev.close_time:
                raise CacheInconsistencyError(
                    f"{self.key}: close_time regresses at {curr.open_time}"
                )
        if len(self._by_open) != len(self._candles):
            raise CacheInconsistencyError(
                f"{self.key}: index holds {len(self._by_open)} candles, "
                f"sorted view holds {len(self._candles)}"
            )

    def stats(self, now: Optional[int] = None) -> CacheStats:
        return CacheStats(
            symbol=self.symbol,
            interval=self.interval,
            candle_count=self.candle_count,
            data_start_time=self.data_start_time,
            data_end_time=self.data_end_time,
            last_update_time=self.last_update_time,
            status=self.status,
            needs_update=self.needs_update(now),
            error_message=self.error_message,
        )

    def __repr__(self) -> str:
        return (
            f"CandleStore({self.key}, candles={self.candle_count}, "
            f"range=[{self.data_start_time}, {self.data_end_time}], status={self.status.value})"
        )
