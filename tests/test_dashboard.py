"""
Dashboard JSON routes.

Coverage:
- cache stats, scheduler status, backtest list and detail
- 404 on unknown backtest, 400 on a bad log line count
- log tail
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from aiohttp.test_utils import TestClient, TestServer

from dashboard import Dashboard
from exchange.models import Action, BacktestResult, CloseReason, EquityPoint, Trade


class FakeCache:
    def get_cache_stats(self):
        return {"total_records": 1, "details": [{"symbol": "BTCUSDT", "status": "ACTIVE"}]}


class FakeScheduler:
    def get_status(self):
        return {"running": True, "tasks": [{"name": "cache-update"}]}


class FakeRunner:
    def __init__(self, results):
        self.results = {r.id: r for r in results}

    def list_results(self):
        return list(self.results.values())

    def get_result(self, backtest_id):
        return self.results.get(backtest_id)


def finished_result() -> BacktestResult:
    result = BacktestResult(
        id="abc123", name="demo", symbol="BTCUSDT", interval="1h",
        start_time=0, end_time=1, initial_balance=Decimal("10000"),
    )
    trades = [
        Trade(1, Action.BUY, Decimal("100"), Decimal("50"), Decimal("0"), Decimal("5000")),
        Trade(2, Action.SELL, Decimal("106"), Decimal("50"), Decimal("300"), Decimal("10300"),
              CloseReason.TAKE_PROFIT),
    ]
    curve = [EquityPoint(2, Decimal("10300"), Decimal("106"))]
    result.complete(Decimal("10300"), trades, curve, {"total_trades": 1}, "2024-01-01T00:00:00")
    return result


def request(dashboard: Dashboard, path: str):
    async def scenario():
        client = TestClient(TestServer(dashboard.app))
        await client.start_server()
        try:
            resp = await client.get(path)
            return resp.status, await resp.json()
        finally:
            await client.close()

    return asyncio.run(scenario())


def dashboard(tmp_path=None, **kwargs) -> Dashboard:
    log_path = str(tmp_path / "cache.log") if tmp_path else "missing.log"
    return Dashboard(
        FakeCache(),
        scheduler=FakeScheduler(),
        runner=FakeRunner([finished_result()]),
        log_path=log_path,
        **kwargs,
    )


def test_cache_stats_route() -> None:
    status, body = request(dashboard(), "/api/cache/stats")
    assert status == 200
    assert body["total_records"] == 1


def test_scheduler_route() -> None:
    status, body = request(dashboard(), "/api/scheduler")
    assert status == 200
    assert body["running"] is True


def test_scheduler_route_without_scheduler() -> None:
    status, body = request(Dashboard(FakeCache()), "/api/scheduler")
    assert body == {"running": False, "tasks": []}


def test_backtest_list_and_detail() -> None:
    status, body = request(dashboard(), "/api/backtests")
    assert status == 200
    (summary,) = body["backtests"]
    assert summary["id"] == "abc123"
    assert summary["status"] == "COMPLETED"
    assert summary["final_balance"] == "10300"
    assert "trades" not in summary

    status, body = request(dashboard(), "/api/backtests/abc123")
    assert status == 200
    assert [t["side"] for t in body["trades"]] == ["BUY", "SELL"]
    assert body["trades"][1]["close_reason"] == "TAKE_PROFIT"
    assert body["equity_curve"][0]["balance"] == "10300"


def test_unknown_backtest_is_404() -> None:
    status, body = request(dashboard(), "/api/backtests/nope")
    assert status == 404
    assert "not found" in body["error"]


def test_logs_tail(tmp_path) -> None:
    (tmp_path / "cache.log").write_text("".join(f"line {i}\n" for i in range(10)))
    status, body = request(dashboard(tmp_path), "/api/logs?n=3")
    assert status == 200
    assert body == {"lines": ["line 7", "line 8", "line 9"], "total": 3}


def test_logs_bad_count() -> None:
    status, body = request(dashboard(), "/api/logs?n=abc")
    assert status == 400
