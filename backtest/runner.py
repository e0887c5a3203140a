"""
Backtest Runner — loads candles through the cache, runs the engine,
and persists every result (COMPLETED or FAILED).
"""

from __future__ import annotations
import asyncio
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING
from exchange.models import BacktestResult
from core.errors import FetchError
from backtest.engine import BacktestEngine, utc_now_iso
import logging

if TYPE_CHECKING:
    from config import StrategyConfig
    from data.cache_manager import CacheManager
    from storage.database import Database

logger = logging.getLogger(__name__)


class BacktestRunner:
    """Glue between the cache, the engine and the results table."""

    def __init__(self, cache: "CacheManager", engine: BacktestEngine, db: "Database"):
        self.cache = cache
        self.engine = engine
        self.db = db

    async def run(
        self,
        strategy: "StrategyConfig",
        start: int,
        end: int,
        initial_balance: Optional[Decimal] = None,
        timeout_sec: Optional[float] = None,
    ) -> BacktestResult:
        """
        Simulate `strategy` over [start, end].
        Fetch failures, too little data and timeouts all end as FAILED.
        Any other error also finalizes FAILED before it propagates.
        """
        result = self.engine.new_result(strategy, start, end, initial_balance)
        self.db.save_backtest(result)

        try:
            candles = await self.cache.get_range(strategy.symbol, strategy.interval, start, end)
        except FetchError as e:
            logger.error(f"[BACKTEST] {result.id[:8]}: could not load candles: {e}")
            result.fail(f"Failed to load historical data: {e}", utc_now_iso())
            self.db.save_backtest(result)
            return result
        except asyncio.CancelledError:
            result.fail("Backtest cancelled while loading data", utc_now_iso())
            self.db.save_backtest(result)
            raise
        except Exception as e:
            logger.error(f"[BACKTEST] {result.id[:8]}: could not load candles: {e}", exc_info=True)
            result.fail(f"Failed to load historical data: {e}", utc_now_iso())
            self.db.save_backtest(result)
            raise

        task = asyncio.create_task(self.engine.execute(result, candles, strategy))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_sec)
            if not done:
                logger.error(f"[BACKTEST] {result.id[:8]}: timed out after {timeout_sec}s")
                # finalize first so the engine's cancel branch keeps this reason
                result.fail(f"Timed out after {timeout_sec}s", utc_now_iso())
                await self._cancel(task)
            else:
                task.result()
        except asyncio.CancelledError:
            await self._cancel(task)
            raise
        except Exception as e:
            logger.error(f"[BACKTEST] {result.id[:8]}: simulation error: {e}", exc_info=True)
            if not result.is_final:
                result.fail(f"Backtest error: {e}", utc_now_iso())
            raise
        finally:
            self.db.save_backtest(result)

        return result

    @staticmethod
    async def _cancel(task: asyncio.Task):
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def get_result(self, backtest_id: str) -> Optional[BacktestResult]:
        return self.db.get_backtest(backtest_id)

    def list_results(self) -> List[BacktestResult]:
        return self.db.list_backtests()

    def delete_result(self, backtest_id: str) -> bool:
        deleted = self.db.delete_backtest(backtest_id)
        if deleted:
            logger.info(f"[BACKTEST] Deleted {backtest_id}")
        return deleted
