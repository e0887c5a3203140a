"""
Binance Spot REST API Client (market data only).
Handles session lifecycle, timeouts, and error classification for klines.
"""

from __future__ import annotations
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional
import aiohttp
import logging

from exchange.models import Candle
from core.errors import FetchError

logger = logging.getLogger(__name__)

MAX_KLINES_LIMIT = 1000
RETRYABLE_STATUSES = {418, 429, 500, 502, 503, 504}


def parse_klines(raw_klines: List[List[Any]]) -> List[Candle]:
    """
    Parse raw Binance kline rows into Candle objects (already oldest-first).
    Row format: [openTime, open, high, low, close, volume, closeTime, ...]
    """
    candles = []
    for k in raw_klines:
        try:
            candles.append(Candle(
                open_time=int(k[0]),
                open=Decimal(str(k[1])),
                high=Decimal(str(k[2])),
                low=Decimal(str(k[3])),
                close=Decimal(str(k[4])),
                volume=Decimal(str(k[5])),
                close_time=int(k[6]),
            ))
        except (IndexError, ValueError, ArithmeticError) as e:
            logger.warning(f"[REST] Bad kline data: {k}: {e}")
    return candles


class BinanceRestClient:
    """Async Binance public market-data wrapper."""

    def __init__(self, base_url: str, timeout_sec: float = 15.0):
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # trust_env picks up HTTPS_PROXY / HTTP_PROXY
            self._session = aiohttp.ClientSession(timeout=self.timeout, trust_env=True)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """GET a public endpoint. Raises FetchError on any failure."""
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.error(f"[REST] GET {endpoint} HTTP {resp.status}: {body[:200]}")
                    raise FetchError(
                        f"Binance HTTP {resp.status} on {endpoint}: {body[:200]}",
                        retryable=resp.status in RETRYABLE_STATUSES,
                        status=resp.status,
                    )
                return await resp.json()

        except asyncio.TimeoutError as e:
            logger.error(f"[REST] GET {endpoint} timed out")
            raise FetchError(f"Timeout on {endpoint}") from e
        except aiohttp.ClientError as e:
            logger.error(f"[REST] GET {endpoint} Exception: {e}")
            raise FetchError(f"Network error on {endpoint}: {e}") from e

    # ==================== Market Endpoints ====================

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Candle]:
        """
        Get historical kline/candle data, oldest first.
        Interval: 1m, 3m, 5m, 15m, 30m, 1h, 2h, 4h, 6h, 8h, 12h, 1d, 3d, 1w
        """
        params: Dict[str, Any] = {
            "symbol": symbol,
            "interval": interval,
            "limit": str(min(limit, MAX_KLINES_LIMIT)),
        }
        if start_time is not None:
            params["startTime"] = str(start_time)
        if end_time is not None:
            params["endTime"] = str(end_time)

        data = await self._request("/api/v3/klines", params)
        if not isinstance(data, list):
            raise FetchError(f"Unexpected klines payload for {symbol} {interval}: {str(data)[:200]}")
        return parse_klines(data)
