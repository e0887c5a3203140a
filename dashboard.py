"""
Dashboard — read-only JSON stats server for the candle cache.
Uses aiohttp.web (already a dependency). No UI, no writes.

Routes:
  GET /api/cache/stats        per-key candle counts, ranges, staleness, status
  GET /api/scheduler          periodic task status
  GET /api/backtests          stored backtest summaries
  GET /api/backtests/{id}     one backtest with trades and equity curve
  GET /api/logs?n=50          tail of the log file
"""

from __future__ import annotations
import os
import json
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Optional, TYPE_CHECKING
from aiohttp import web
import logging

from exchange.models import BacktestResult

if TYPE_CHECKING:
    from data.cache_manager import CacheManager
    from data.refresh_scheduler import RefreshScheduler
    from backtest.runner import BacktestRunner

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that keeps Decimal precision as strings."""
    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=DecimalEncoder),
        content_type="application/json",
        status=status,
    )


def backtest_summary(result: BacktestResult) -> Dict[str, Any]:
    return {
        "id": result.id,
        "name": result.name,
        "symbol": result.symbol,
        "interval": result.interval,
        "start_time": result.start_time,
        "end_time": result.end_time,
        "initial_balance": result.initial_balance,
        "final_balance": result.final_balance,
        "status": result.status.value,
        "error": result.error,
        "summary": result.summary,
        "created_at": result.created_at,
        "completed_at": result.completed_at,
    }


class Dashboard:
    """Stats server."""

    def __init__(
        self,
        cache: "CacheManager",
        scheduler: Optional["RefreshScheduler"] = None,
        runner: Optional["BacktestRunner"] = None,
        port: int = 8080,
        log_path: str = "data/cache.log",
    ):
        self.cache = cache
        self.scheduler = scheduler
        self.runner = runner
        self.port = port
        self.log_path = log_path
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/cache/stats", self._api_cache_stats)
        self.app.router.add_get("/api/scheduler", self._api_scheduler)
        self.app.router.add_get("/api/backtests", self._api_backtests)
        self.app.router.add_get("/api/backtests/{id}", self._api_backtest)
        self.app.router.add_get("/api/logs", self._api_logs)

    async def start(self):
        """Start the stats web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        logger.info(f"[DASH] Running on http://0.0.0.0:{self.port}")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ─── Routes ───

    async def _api_cache_stats(self, request: web.Request) -> web.Response:
        try:
            return json_response(self.cache.get_cache_stats())
        except Exception as e:
            logger.error(f"[DASH] Cache stats error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_scheduler(self, request: web.Request) -> web.Response:
        if self.scheduler is None:
            return json_response({"running": False, "tasks": []})
        return json_response(self.scheduler.get_status())

    async def _api_backtests(self, request: web.Request) -> web.Response:
        if self.runner is None:
            return json_response({"backtests": []})
        try:
            results = self.runner.list_results()
            return json_response({"backtests": [backtest_summary(r) for r in results]})
        except Exception as e:
            logger.error(f"[DASH] Backtests API error: {e}")
            return json_response({"error": str(e)}, status=500)

    async def _api_backtest(self, request: web.Request) -> web.Response:
        backtest_id = request.match_info["id"]
        result = self.runner.get_result(backtest_id) if self.runner else None
        if result is None:
            return json_response({"error": f"Backtest {backtest_id} not found"}, status=404)

        data = backtest_summary(result)
        data["trades"] = [t.to_dict() for t in result.trades]
        data["equity_curve"] = [p.to_dict() for p in result.equity_curve]
        return json_response(data)

    async def _api_logs(self, request: web.Request) -> web.Response:
        """Return last N lines from the log file."""
        try:
            n = int(request.query.get("n", 50))
        except ValueError:
            return json_response({"error": "n must be an integer"}, status=400)

        lines = []
        if os.path.exists(self.log_path):
            with open(self.log_path, "r") as f:
                lines = [line.strip() for line in f.readlines()[-n:]]
        return json_response({"lines": lines, "total": len(lines)})
