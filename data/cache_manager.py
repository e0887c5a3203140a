"""
Cache Manager — serves candle ranges from cache, backfilling on demand.

Per request for (symbol, interval, start, end):
  1. No record / force refresh / record in ERROR → full fetch, populate
  2. Record covers the range → serve from cache; kick a background
     forward update if the record is stale
  3. Otherwise → fetch only the missing prefix and/or suffix, merge

One asyncio.Lock per key serializes all merges for that key. A second
caller waits (bounded) and re-reads the cache before fetching anything.

INVARIANT: fetched pages are merged only after the whole fetch for a call
succeeded. A failed or cancelled fetch never leaves a half-merged record.
"""

from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING
from exchange.models import (
    Candle, CacheStatus, RangeResult, RefreshSummary, ServeMode, WarmupResult, interval_ms,
)
from storage.candle_store import CandleStore, now_ms
from core.errors import FetchError, MarketDataError
from config import CacheConfig
import logging

if TYPE_CHECKING:
    from data.batch_fetcher import BatchFetcher
    from storage.database import Database

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000
Key = Tuple[str, str]


def iso_ms(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat()


class CacheManager:
    """Sole owner of CandleStore lifecycle."""

    def __init__(
        self,
        fetcher: "BatchFetcher",
        db: "Database",
        config: Optional[CacheConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.fetcher = fetcher
        self.db = db
        self.config = config or CacheConfig()
        self.clock = clock or now_ms

        self._stores: Dict[Key, CandleStore] = {}
        self._locks: Dict[Key, asyncio.Lock] = {}
        self._updates: Dict[Key, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # ==================== Range Queries ====================

    async def get_range(
        self,
        symbol: str,
        interval: str,
        start: int,
        end: int,
        force_refresh: bool = False,
    ) -> List[Candle]:
        result = await self.fetch_range(symbol, interval, start, end, force_refresh)
        return result.candles

    async def fetch_range(
        self,
        symbol: str,
        interval: str,
        start: int,
        end: int,
        force_refresh: bool = False,
    ) -> RangeResult:
        """Candles with close_time in [start, end], plus how they were served."""
        symbol = symbol.upper()
        interval_ms(interval)
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        key = (symbol, interval)

        store = self._load(key)
        if not force_refresh and self._servable(store, start, end):
            return self._serve_cached(store, start, end)

        async with self._key_lock(key):
            # Another caller may have filled the range while we waited
            store = self._load(key)
            if not force_refresh and self._servable(store, start, end):
                return self._serve_cached(store, start, end)

            if store is None:
                store = CandleStore(symbol, interval, last_update_time=self.clock())
                self._stores[key] = store

            if force_refresh or store.is_empty or store.status == CacheStatus.ERROR:
                mode = ServeMode.FULL_FETCH
                segments = [(start, end)]
            else:
                mode = ServeMode.BACKFILL
                segments = self._missing_segments(store, start, end)

            added = await self._fetch_and_merge(store, segments)

        if store.is_empty:
            raise FetchError(
                f"No data available for {symbol} {interval} in requested range",
                retryable=False,
            )

        candles = store.range_query(start, end)
        reason = f"fetched {len(segments)} segment(s), {added} new candles"
        logger.info(f"[CACHE] {store.key}: {mode.value} → {len(candles)} candles ({reason})")
        return RangeResult(candles, mode, reason)

    def _servable(self, store: Optional[CandleStore], start: int, end: int) -> bool:
        return (
            store is not None
            and store.status != CacheStatus.ERROR
            and store.covers_range(start, end)
        )

    def _serve_cached(self, store: CandleStore, start: int, end: int) -> RangeResult:
        candles = store.range_query(start, end)
        logger.debug(f"[CACHE] {store.key}: HIT → {len(candles)} candles")
        if store.needs_update(self.clock()):
            self._schedule_update(store.symbol, store.interval)
        return RangeResult(candles, ServeMode.CACHE, "served from cache")

    def _missing_segments(self, store: CandleStore, start: int, end: int) -> List[Tuple[int, int]]:
        segments = []
        if start < store.data_start_time:
            segments.append((start, store.data_start_time - 1))
        if end > store.data_end_time:
            segments.append((store.data_end_time + 1, end))
        return segments

    # ==================== Fetch + Merge ====================

    async def _fetch_and_merge(self, store: CandleStore, segments: List[Tuple[int, int]]) -> int:
        """
        Fetch every segment, then merge and persist in one step.
        Caller must hold the key lock.
        """
        store.status = CacheStatus.UPDATING
        self.db.save_cache_record(store)

        fetched: List[Candle] = []
        try:
            for seg_start, seg_end in segments:
                logger.info(
                    f"[CACHE] {store.key}: fetching {iso_ms(seg_start)} → {iso_ms(seg_end)}"
                )
                fetched.extend(
                    await self.fetcher.fetch_range(store.symbol, store.interval, seg_start, seg_end)
                )
        except asyncio.CancelledError:
            if store.is_empty:
                store.status = CacheStatus.ERROR
                store.error_message = "cancelled"
            else:
                store.status = CacheStatus.ACTIVE
            self.db.save_cache_record(store)
            logger.warning(f"[CACHE] {store.key}: fetch cancelled, status={store.status.value}")
            raise
        except Exception as e:
            store.status = CacheStatus.ERROR
            store.error_message = str(e)
            self.db.save_cache_record(store)
            logger.error(f"[CACHE] {store.key}: fetch failed: {e}")
            raise

        added = store.merge(fetched, now=self.clock())
        store.status = CacheStatus.ACTIVE
        store.error_message = None
        self.db.save_candles(store.symbol, store.interval, fetched)
        self.db.save_cache_record(store)
        return added

    @asynccontextmanager
    async def _key_lock(self, key: Key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.config.wait_timeout_sec)
        except asyncio.TimeoutError:
            raise FetchError(
                f"Timed out after {self.config.wait_timeout_sec}s waiting for "
                f"in-flight fetch on {key[0]} {key[1]}"
            ) from None
        try:
            yield
        finally:
            lock.release()

    def _is_locked(self, key: Key) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _load(self, key: Key) -> Optional[CandleStore]:
        store = self._stores.get(key)
        if store is None:
            store = self.db.load_cache_record(*key)
            if store is not None:
                self._stores[key] = store
        return store

    def _all_stores(self) -> List[CandleStore]:
        stores = []
        for row in self.db.list_cache_records():
            store = self._load((row["symbol"], row["interval"]))
            if store is not None:
                stores.append(store)
        return stores

    # ==================== Forward Updates ====================

    def _schedule_update(self, symbol: str, interval: str):
        """Fire-and-forget forward update for a stale record."""
        key = (symbol, interval)
        if self._is_locked(key):
            return
        pending = self._updates.get(key)
        if pending is not None and not pending.done():
            return

        task = asyncio.create_task(self._background_update(symbol, interval))
        self._updates[key] = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_update(self, symbol: str, interval: str):
        try:
            await self.update_cache(symbol, interval, skip_if_busy=True)
        except MarketDataError as e:
            logger.error(f"[CACHE] {symbol}_{interval}: background update failed: {e}")

    async def update_cache(self, symbol: str, interval: str, skip_if_busy: bool = False) -> int:
        """
        Forward-fill from data_end_time + 1 to now.
        Returns the number of new candles (0 when skipped or nothing new).
        """
        symbol = symbol.upper()
        key = (symbol, interval)
        store = self._load(key)
        if store is None or store.is_empty:
            logger.warning(f"[CACHE] {symbol}_{interval}: no cached data to update")
            return 0
        if skip_if_busy and self._is_locked(key):
            logger.debug(f"[CACHE] {store.key}: update skipped, fetch in flight")
            return 0

        async with self._key_lock(key):
            start = store.data_end_time + 1
            end = self.clock()
            if start > end:
                store.touch(end)
                self.db.save_cache_record(store)
                return 0

            added = await self._fetch_and_merge(store, [(start, end)])

        if added:
            logger.info(f"[CACHE] {store.key}: +{added} candles")
        else:
            logger.debug(f"[CACHE] {store.key}: no new candles")
        return added

    async def update_all_caches(self) -> RefreshSummary:
        """Refresh every ACTIVE record that is stale."""
        now = self.clock()
        stores = self._all_stores()
        due = [
            s for s in stores
            if s.status == CacheStatus.ACTIVE and not s.is_empty and s.needs_update(now)
        ]
        skipped = len(stores) - len(due)
        logger.info(f"[CACHE] Updating {len(due)} stale caches ({skipped} fresh or inactive)")

        sem = asyncio.Semaphore(self.config.max_concurrency)

        async def _one(store: CandleStore) -> bool:
            async with sem:
                try:
                    await self.update_cache(store.symbol, store.interval)
                    return True
                except MarketDataError as e:
                    logger.error(f"[CACHE] {store.key}: update failed: {e}")
                    return False

        results = await asyncio.gather(*(_one(s) for s in due))
        summary = RefreshSummary(
            updated=sum(1 for ok in results if ok),
            skipped=skipped,
            failed=sum(1 for ok in results if not ok),
        )
        logger.info(
            f"[CACHE] Update complete: {summary.updated} updated, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        return summary

    # ==================== Maintenance ====================

    async def warmup_cache(
        self,
        symbols: Optional[List[str]] = None,
        intervals: Optional[List[str]] = None,
        days: Optional[int] = None,
    ) -> List[WarmupResult]:
        """Preload `days` of history for every (symbol, interval) pair."""
        if symbols is None:
            symbols = self.config.warmup_symbols
        if intervals is None:
            intervals = self.config.warmup_intervals
        if days is None:
            days = self.config.warmup_days

        end = self.clock()
        start = end - days * DAY_MS
        sem = asyncio.Semaphore(self.config.max_concurrency)
        logger.info(
            f"[CACHE] Warming up {len(symbols)} symbols × {len(intervals)} intervals, {days} days"
        )

        async def _one(symbol: str, interval: str) -> WarmupResult:
            async with sem:
                try:
                    await self.fetch_range(symbol, interval, start, end)
                    logger.info(f"[CACHE] Warmed up {symbol} {interval}")
                    return WarmupResult(symbol.upper(), interval, ok=True)
                except MarketDataError as e:
                    logger.error(f"[CACHE] Warmup failed for {symbol} {interval}: {e}")
                    return WarmupResult(symbol.upper(), interval, ok=False, error=str(e))

        results = await asyncio.gather(*(_one(s, i) for s in symbols for i in intervals))
        ok = sum(1 for r in results if r.ok)
        logger.info(f"[CACHE] Warmup complete: {ok}/{len(results)} succeeded")
        return list(results)

    async def prune_old_data(self, keep_days: Optional[int] = None) -> int:
        """Drop candles older than keep_days. Returns the number removed."""
        if keep_days is None:
            keep_days = self.config.keep_days
        cutoff = self.clock() - keep_days * DAY_MS
        removed = 0

        for store in self._all_stores():
            key = (store.symbol, store.interval)
            async with self._key_lock(key):
                count = store.prune_before(cutoff)
                if count:
                    self.db.delete_candles_before(store.symbol, store.interval, cutoff)
                    self.db.save_cache_record(store)
                    logger.info(f"[CACHE] {store.key}: pruned {count} candles")
                removed += count

        logger.info(f"[CACHE] Prune complete: {removed} candles older than {keep_days} days")
        return removed

    def clear_cache(self, symbol: Optional[str] = None, interval: Optional[str] = None) -> int:
        symbol = symbol.upper() if symbol else None
        for key in list(self._stores):
            if (symbol is None or key[0] == symbol) and (interval is None or key[1] == interval):
                del self._stores[key]
        count = self.db.delete_cache_records(symbol, interval)
        logger.info(f"[CACHE] Cleared {count} cache records")
        return count

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self.clock()
        stats = [s.stats(now) for s in self._all_stores()]
        symbols = sorted({s.symbol for s in stats})
        intervals = sorted({s.interval for s in stats})
        return {
            "total_records": len(stats),
            "total_candles": sum(s.candle_count for s in stats),
            "unique_symbols": len(symbols),
            "unique_intervals": len(intervals),
            "symbols": symbols,
            "intervals": intervals,
            "details": [
                {
                    "symbol": s.symbol,
                    "interval": s.interval,
                    "candle_count": s.candle_count,
                    "data_start": iso_ms(s.data_start_time),
                    "data_end": iso_ms(s.data_end_time),
                    "last_update": iso_ms(s.last_update_time),
                    "status": s.status.value,
                    "needs_update": s.needs_update,
                    "error_message": s.error_message,
                }
                for s in stats
            ],
        }

    async def close(self):
        """Cancel in-flight background updates."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._updates.clear()
