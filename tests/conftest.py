"""
Shared fixtures and fakes.

Candle factories build aligned hourly series starting at T0. FakeKlineSource
mimics the provider's klines endpoint: startTime/endTime filter on open time,
results capped at `limit`, oldest first.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

from config import FetchConfig
from core.errors import FetchError
from exchange.models import Advice, Candle, MarketContext, Signal
from storage.database import Database

HOUR = 3_600_000
DAY = 86_400_000
T0 = 1_699_999_200_000  # aligned to the hour


def make_candle(i: int, close, volume=1, step: int = HOUR, t0: int = T0) -> Candle:
    open_time = t0 + i * step
    close = Decimal(str(close))
    return Candle(
        open_time=open_time,
        open=close,
        high=close + 1,
        low=close - 1,
        close=close,
        volume=Decimal(str(volume)),
        close_time=open_time + step - 1,
    )


def make_candles(
    closes: Iterable,
    volumes: Optional[Sequence] = None,
    step: int = HOUR,
    t0: int = T0,
) -> List[Candle]:
    closes = list(closes)
    volumes = list(volumes) if volumes is not None else [1] * len(closes)
    return [make_candle(i, c, v, step, t0) for i, (c, v) in enumerate(zip(closes, volumes))]


def flat_candles(n: int, price=100, step: int = HOUR) -> List[Candle]:
    return make_candles([price] * n, step=step)


async def no_sleep(_seconds: float):
    return None


class FakeKlineSource:
    """In-memory kline endpoint. Failures are raised (in order) before serving."""

    def __init__(
        self,
        candles: Optional[List[Candle]] = None,
        by_interval: Optional[Dict[str, List[Candle]]] = None,
        failures: Optional[List[Exception]] = None,
        fail_symbols: Iterable[str] = (),
    ):
        self.candles = candles or []
        self.by_interval = by_interval or {}
        self.failures = list(failures or [])
        self.fail_symbols = set(fail_symbols)
        self.calls: List[dict] = []

    async def get_klines(self, symbol, interval, limit=500, start_time=None, end_time=None):
        self.calls.append({
            "symbol": symbol,
            "interval": interval,
            "limit": limit,
            "start_time": start_time,
            "end_time": end_time,
        })
        if symbol in self.fail_symbols:
            raise FetchError(f"Invalid symbol {symbol}", retryable=False, status=400)
        if self.failures:
            raise self.failures.pop(0)

        series = self.by_interval.get(interval, self.candles)
        out = [
            c for c in series
            if (start_time is None or c.open_time >= start_time)
            and (end_time is None or c.open_time <= end_time)
        ]
        return out[:limit]


class FakeAdvisor:
    """Returns a fixed Advice, or raises the given error."""

    def __init__(self, advice: Optional[Advice] = None, error: Optional[Exception] = None):
        self.advice = advice
        self.error = error
        self.calls: List[tuple] = []

    async def advise(self, context: MarketContext, signal: Signal) -> Advice:
        self.calls.append((context, signal))
        if self.error is not None:
            raise self.error
        return self.advice


@pytest.fixture
def db():
    database = Database(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def fetch_config() -> FetchConfig:
    return FetchConfig(page_limit=10, max_fetches=100, page_delay_sec=0, retry_backoff_sec=0)
