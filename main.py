"""
Candle Cache & Backtester — Main Orchestrator.
Wires the components together and exposes the command line:

  serve      scheduler + stats server until SIGINT/SIGTERM
  warmup     preload popular pairs into the cache
  backtest   run a strategy file over a date range
  stats      print cache statistics
"""

from __future__ import annotations
import argparse
import asyncio
import json
import os
import sys
import signal
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

# Create data dir before FileHandler
os.makedirs("data", exist_ok=True)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("data/cache.log"),
    ],
)
logger = logging.getLogger(__name__)

from config import AppConfig, StrategyConfig
from exchange.binance_rest import BinanceRestClient
from data.batch_fetcher import BatchFetcher
from data.cache_manager import CacheManager
from data.refresh_scheduler import RefreshScheduler
from backtest.advisor import HttpAdvisor
from backtest.engine import BacktestEngine
from backtest.runner import BacktestRunner
from storage.database import Database
from dashboard import Dashboard, DecimalEncoder, backtest_summary

DAY_MS = 86_400_000


def parse_date_ms(value: str) -> int:
    """YYYY-MM-DD (UTC midnight) → epoch ms."""
    dt = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class App:
    """Owns every long-lived component and their shutdown order."""

    def __init__(self, config: AppConfig):
        self.config = config

        self.db = Database(config.storage.db_path)
        self.client = BinanceRestClient(
            base_url=config.exchange.base_url,
            timeout_sec=config.exchange.request_timeout_sec,
        )
        self.fetcher = BatchFetcher(self.client, config.fetch)
        self.cache = CacheManager(self.fetcher, self.db, config.cache)

        self.advisor: Optional[HttpAdvisor] = None
        if config.advisor.enabled:
            self.advisor = HttpAdvisor(
                api_key=config.advisor.api_key,
                base_url=config.advisor.base_url,
                model=config.advisor.model,
                timeout_sec=config.advisor.timeout_sec,
            )
        self.engine = BacktestEngine(config.backtest, advisor=self.advisor)
        self.runner = BacktestRunner(self.cache, self.engine, self.db)

        self.scheduler = RefreshScheduler.with_default_tasks(
            self.cache, config.scheduler, config.cache
        )
        self.dashboard = Dashboard(
            self.cache, self.scheduler, self.runner, port=config.dashboard.port
        )

    def open(self):
        os.makedirs(os.path.dirname(self.config.storage.db_path) or "data", exist_ok=True)
        self.db.connect()

    async def close(self):
        """Graceful shutdown."""
        logger.info("[SHUTDOWN] Stopping...")
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.dashboard.stop()
        await self.cache.close()
        await self.client.close()
        if self.advisor is not None:
            await self.advisor.close()
        self.db.close()
        logger.info("[SHUTDOWN] Complete.")

    # ==================== Commands ====================

    async def serve(self):
        logger.info("=" * 60)
        logger.info("   CANDLE CACHE — STARTING")
        logger.info("=" * 60)

        stop_event = asyncio.Event()
        if sys.platform != "win32":
            loop = asyncio.get_running_loop()

            def handle_signal(sig):
                logger.info(f"Received signal {sig}. Initiating shutdown...")
                stop_event.set()

            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        self.scheduler.start()
        if self.config.dashboard.enabled:
            await self.dashboard.start()
        logger.info("[BOOT] ✅ All systems go. Running...")

        await stop_event.wait()

    async def warmup(
        self,
        symbols: Optional[List[str]],
        intervals: Optional[List[str]],
        days: Optional[int],
    ) -> int:
        results = await self.cache.warmup_cache(symbols, intervals, days)
        failed = [r for r in results if not r.ok]
        for r in failed:
            logger.warning(f"[BOOT] Warmup failed {r.symbol} {r.interval}: {r.error}")
        return 1 if failed else 0

    async def backtest(
        self,
        strategy_path: str,
        start: str,
        end: str,
        balance: Optional[str],
        timeout_sec: Optional[float],
    ) -> int:
        with open(strategy_path, "r") as f:
            strategy = StrategyConfig.from_dict(json.load(f), self.config.risk_defaults)

        result = await self.runner.run(
            strategy,
            start=parse_date_ms(start),
            end=parse_date_ms(end) + DAY_MS - 1,
            initial_balance=Decimal(balance) if balance else None,
            timeout_sec=timeout_sec,
        )
        print(json.dumps(backtest_summary(result), cls=DecimalEncoder, indent=2))
        return 0 if result.error is None else 1

    def stats(self) -> int:
        print(json.dumps(self.cache.get_cache_stats(), cls=DecimalEncoder, indent=2))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crypto candle cache and backtester")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the refresh scheduler and stats server")

    warmup = sub.add_parser("warmup", help="Preload popular pairs")
    warmup.add_argument("--symbols", nargs="+")
    warmup.add_argument("--intervals", nargs="+")
    warmup.add_argument("--days", type=int)

    bt = sub.add_parser("backtest", help="Backtest a strategy file")
    bt.add_argument("--strategy", required=True, help="Strategy JSON file")
    bt.add_argument("--start", required=True, help="YYYY-MM-DD")
    bt.add_argument("--end", required=True, help="YYYY-MM-DD (inclusive)")
    bt.add_argument("--balance", help="Initial balance")
    bt.add_argument("--timeout", type=float, help="Seconds before the run is abandoned")

    sub.add_parser("stats", help="Print cache statistics")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    config = AppConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())

    app = App(config)
    app.open()
    try:
        if args.command == "serve":
            await app.serve()
            return 0
        if args.command == "warmup":
            return await app.warmup(args.symbols, args.intervals, args.days)
        if args.command == "backtest":
            return await app.backtest(
                args.strategy, args.start, args.end, args.balance, args.timeout
            )
        return app.stats()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await app.close()


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
