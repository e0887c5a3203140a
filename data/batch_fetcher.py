"""
Batch Fetcher — paginated, rate-limited kline retrieval.

Pagination:
  - Request `page_limit` candles starting at the cursor
  - Advance the cursor to lastCandle.close_time + 1
  - Stop when a page is short (exhausted), the last close_time reaches `end`,
    or the page ceiling is hit
  - A cursor that fails to advance aborts with FetchError

Transient failures are retried up to `max_retries` times with a fixed backoff.
"""

from __future__ import annotations
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Protocol
from exchange.models import Candle, interval_ms
from core.errors import FetchError
import logging

from config import FetchConfig

logger = logging.getLogger(__name__)


class KlineSource(Protocol):
    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Candle]:
        ...


def fmt_ms(ts: Optional[int]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


class BatchFetcher:
    """Fetches arbitrary ranges by walking the provider's page limit."""

    def __init__(
        self,
        client: KlineSource,
        config: Optional[FetchConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.config = config or FetchConfig()
        self._sleep = sleep

    async def fetch_range(self, symbol: str, interval: str, start: int, end: int) -> List[Candle]:
        """All candles with close_time in [start, end], oldest first."""
        interval_ms(interval)
        if start > end:
            raise ValueError(f"start {start} is after end {end}")

        limit = self.config.page_limit
        all_candles: List[Candle] = []
        cursor = start
        fetch_count = 0

        logger.info(f"[FETCH] {symbol} {interval}: batch fetch {fmt_ms(start)} → {fmt_ms(end)}")

        while cursor <= end:
            if fetch_count >= self.config.max_fetches:
                logger.warning(
                    f"[FETCH] {symbol} {interval}: page ceiling ({self.config.max_fetches}) "
                    f"reached at {fmt_ms(cursor)}. Returning {len(all_candles)} candles."
                )
                break
            fetch_count += 1

            page = await self._fetch_page(symbol, interval, cursor, end, fetch_count)
            if not page:
                logger.info(f"[FETCH] {symbol} {interval}: no more data at {fmt_ms(cursor)}")
                break

            in_range = [c for c in page if start <= c.close_time <= end]
            all_candles.extend(in_range)
            logger.debug(
                f"[FETCH] {symbol} {interval}: batch {fetch_count} → "
                f"{len(in_range)} candles, total {len(all_candles)}"
            )

            last_close = page[-1].close_time
            if len(page) < limit:
                break
            if last_close >= end:
                break

            next_cursor = last_close + 1
            if next_cursor <= cursor:
                logger.error(f"[FETCH] {symbol} {interval}: cursor stuck at {cursor}")
                raise FetchError(
                    f"Cursor did not advance for {symbol} {interval} at {cursor}",
                    retryable=False,
                )
            cursor = next_cursor

            await self._sleep(self.config.page_delay_sec)

        logger.info(
            f"[FETCH] {symbol} {interval}: fetched {len(all_candles)} candles "
            f"in {fetch_count} API calls"
        )
        return all_candles

    async def _fetch_page(
        self, symbol: str, interval: str, cursor: int, end: int, batch: int
    ) -> List[Candle]:
        """One page with bounded retry on transient errors."""
        attempt = 0
        while True:
            try:
                return await self.client.get_klines(
                    symbol,
                    interval,
                    limit=self.config.page_limit,
                    start_time=cursor,
                    end_time=end,
                )
            except FetchError as e:
                attempt += 1
                if not e.retryable or attempt > self.config.max_retries:
                    logger.error(
                        f"[FETCH] {symbol} {interval}: batch {batch} failed "
                        f"after {attempt} attempt(s): {e}"
                    )
                    raise
                logger.warning(
                    f"[FETCH] {symbol} {interval}: batch {batch} error: {e}. "
                    f"Retry {attempt}/{self.config.max_retries} in {self.config.retry_backoff_sec}s"
                )
                await self._sleep(self.config.retry_backoff_sec)
