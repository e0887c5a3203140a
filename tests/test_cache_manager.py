"""
CacheManager behaviour against an in-memory provider and sqlite :memory:.

Coverage:
- miss → FULL_FETCH, hit → CACHE with no provider call
- prefix/suffix backfill and gap-fill completeness
- ERROR status on failure, retry on the next call, no empty success
- single fetch for concurrent callers, bounded wait, cancellation status
- stale hit schedules a forward update
- update_cache / update_all_caches / warmup / prune (including keep_days=0) / clear / stats
- records survive a manager restart through the database; a record
  interrupted mid-update is refetched after restart
"""

from __future__ import annotations

import asyncio

import pytest

from config import CacheConfig, FetchConfig
from conftest import DAY, HOUR, T0, FakeKlineSource, make_candles, no_sleep
from core.errors import FetchError
from data.batch_fetcher import BatchFetcher
from data.cache_manager import CacheManager
from exchange.models import CacheStatus, ServeMode

UNIVERSE = make_candles(range(100, 200))


class Clock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


class SlowSource(FakeKlineSource):
    async def get_klines(self, *args, **kwargs):
        await asyncio.sleep(0.01)
        return await super().get_klines(*args, **kwargs)


class BlockingSource(FakeKlineSource):
    """Serves normally until `blocked` is set, then hangs forever."""

    blocked = False

    async def get_klines(self, *args, **kwargs):
        if self.blocked:
            await asyncio.Event().wait()
        return await super().get_klines(*args, **kwargs)


def build(source, db, clock=None, **cache_kw) -> CacheManager:
    fetch_config = FetchConfig(page_delay_sec=0, retry_backoff_sec=0, max_retries=0)
    fetcher = BatchFetcher(source, fetch_config, sleep=no_sleep)
    clock = clock or Clock(UNIVERSE[-1].close_time + 1)
    return CacheManager(fetcher, db, CacheConfig(**cache_kw), clock=clock)


def span(first: int, last: int):
    return UNIVERSE[first].open_time, UNIVERSE[last].close_time


def detail(manager: CacheManager, symbol="BTCUSDT", interval="1h") -> dict:
    for d in manager.get_cache_stats()["details"]:
        if d["symbol"] == symbol and d["interval"] == interval:
            return d
    raise AssertionError(f"no record for {symbol} {interval}")


def test_miss_then_hit(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        first = await manager.fetch_range("btcusdt", "1h", *span(10, 50))
        second = await manager.fetch_range("BTCUSDT", "1h", *span(10, 50))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.mode == ServeMode.FULL_FETCH
    assert first.candles == UNIVERSE[10:51]
    assert second.mode == ServeMode.CACHE
    assert second.candles == first.candles
    assert len(source.calls) == 1


def test_backfills_prefix_and_suffix(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(20, 40))
        wider = await manager.fetch_range("BTCUSDT", "1h", *span(10, 50))
        again = await manager.fetch_range("BTCUSDT", "1h", *span(10, 50))
        return wider, again

    wider, again = asyncio.run(scenario())

    assert wider.mode == ServeMode.BACKFILL
    assert wider.candles == UNIVERSE[10:51]
    assert again.mode == ServeMode.CACHE
    # one full fetch + one call per missing segment
    assert len(source.calls) == 3
    store = manager._load(("BTCUSDT", "1h"))
    assert store.covers_range(*span(10, 50))
    store.verify()


def test_suffix_only_backfill_fetches_one_segment(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 50))
        return await manager.fetch_range("BTCUSDT", "1h", *span(10, 60))

    result = asyncio.run(scenario())
    assert result.mode == ServeMode.BACKFILL
    assert len(source.calls) == 2
    assert source.calls[1]["start_time"] == UNIVERSE[51].open_time


def test_failure_marks_error_and_next_call_retries(db) -> None:
    source = FakeKlineSource(UNIVERSE, failures=[FetchError("HTTP 400 bad", retryable=False)])
    manager = build(source, db)

    with pytest.raises(FetchError):
        asyncio.run(manager.fetch_range("BTCUSDT", "1h", *span(0, 10)))
    d = detail(manager)
    assert d["status"] == CacheStatus.ERROR.value
    assert "HTTP 400" in d["error_message"]

    result = asyncio.run(manager.fetch_range("BTCUSDT", "1h", *span(0, 10)))
    assert result.mode == ServeMode.FULL_FETCH
    assert detail(manager)["status"] == CacheStatus.ACTIVE.value
    assert detail(manager)["error_message"] is None


def test_error_record_is_not_served_from_cache(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(10, 50))
        source.failures.append(FetchError("HTTP 503"))
        with pytest.raises(FetchError):
            await manager.fetch_range("BTCUSDT", "1h", *span(0, 60))
        return await manager.fetch_range("BTCUSDT", "1h", *span(10, 50))

    result = asyncio.run(scenario())
    assert result.mode == ServeMode.FULL_FETCH
    assert result.candles == UNIVERSE[10:51]


def test_no_data_raises_instead_of_empty(db) -> None:
    manager = build(FakeKlineSource([]), db)
    with pytest.raises(FetchError):
        asyncio.run(manager.get_range("BTCUSDT", "1h", *span(0, 10)))


def test_concurrent_callers_share_one_fetch(db) -> None:
    source = SlowSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        return await asyncio.gather(
            manager.fetch_range("BTCUSDT", "1h", *span(0, 30)),
            manager.fetch_range("BTCUSDT", "1h", *span(0, 30)),
        )

    a, b = asyncio.run(scenario())
    assert {a.mode, b.mode} == {ServeMode.FULL_FETCH, ServeMode.CACHE}
    assert a.candles == b.candles
    assert len(source.calls) == 1


def test_bounded_wait_and_cancellation_leave_consistent_status(db) -> None:
    source = BlockingSource(UNIVERSE)
    source.blocked = True
    manager = build(source, db, wait_timeout_sec=0.01)

    async def scenario():
        first = asyncio.create_task(manager.fetch_range("BTCUSDT", "1h", *span(0, 30)))
        await asyncio.sleep(0.01)
        with pytest.raises(FetchError):
            await manager.fetch_range("BTCUSDT", "1h", *span(0, 30))
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

    asyncio.run(scenario())
    d = detail(manager)
    assert d["status"] == CacheStatus.ERROR.value
    assert d["error_message"] == "cancelled"
    assert d["candle_count"] == 0


def test_cancelled_backfill_keeps_existing_data_active(db) -> None:
    source = BlockingSource(UNIVERSE)
    manager = build(source, db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(10, 20))
        source.blocked = True
        task = asyncio.create_task(manager.fetch_range("BTCUSDT", "1h", *span(0, 30)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    d = detail(manager)
    assert d["status"] == CacheStatus.ACTIVE.value
    assert d["candle_count"] == 11


def test_stale_hit_triggers_forward_update(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    clock = Clock(UNIVERSE[59].close_time + 1)
    manager = build(source, db, clock)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 59))
        clock.now = UNIVERSE[62].close_time + 1
        hit = await manager.fetch_range("BTCUSDT", "1h", *span(0, 59))
        await asyncio.sleep(0.05)
        await manager.close()
        return hit

    hit = asyncio.run(scenario())
    assert hit.mode == ServeMode.CACHE
    assert hit.candles == UNIVERSE[:60]
    store = manager._load(("BTCUSDT", "1h"))
    assert store.data_end_time == UNIVERSE[62].close_time
    assert len(db.load_candles("BTCUSDT", "1h")) == 63


def test_update_cache_counts_new_candles(db) -> None:
    source = FakeKlineSource(UNIVERSE)
    clock = Clock(UNIVERSE[49].close_time + 1)
    manager = build(source, db, clock)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 49))
        clock.now = UNIVERSE[54].close_time + 1
        added = await manager.update_cache("BTCUSDT", "1h")
        clock.now += 1
        nothing = await manager.update_cache("BTCUSDT", "1h")
        missing = await manager.update_cache("ETHUSDT", "1h")
        return added, nothing, missing

    assert asyncio.run(scenario()) == (5, 0, 0)


def test_update_all_caches_only_touches_stale_records(db) -> None:
    daily = make_candles(range(10), step=DAY, t0=T0 - 10 * DAY)
    source = FakeKlineSource(by_interval={"1h": UNIVERSE, "1d": daily})
    clock = Clock(UNIVERSE[-1].close_time + 1)
    manager = build(source, db, clock)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 99))
        await manager.fetch_range("BTCUSDT", "1d", daily[0].open_time, daily[-1].close_time)
        clock.now += 2 * HOUR
        return await manager.update_all_caches()

    summary = asyncio.run(scenario())
    assert (summary.updated, summary.skipped, summary.failed) == (1, 1, 0)


def test_warmup_isolates_failing_keys(db) -> None:
    source = FakeKlineSource(UNIVERSE, fail_symbols={"BADUSDT"})
    manager = build(source, db)

    results = asyncio.run(manager.warmup_cache(["BTCUSDT", "BADUSDT"], ["1h"], days=2))

    by_symbol = {r.symbol: r for r in results}
    assert by_symbol["BTCUSDT"].ok
    assert not by_symbol["BADUSDT"].ok
    assert "BADUSDT" in by_symbol["BADUSDT"].error


def test_prune_old_data(db) -> None:
    manager = build(FakeKlineSource(UNIVERSE), db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 99))
        return await manager.prune_old_data(keep_days=2)

    removed = asyncio.run(scenario())
    # clock sits 100h after T0, so closes before T0 + 52h go
    assert removed == 52
    store = manager._load(("BTCUSDT", "1h"))
    assert store.candle_count == 48
    assert store.data_start_time == UNIVERSE[52].open_time
    assert len(db.load_candles("BTCUSDT", "1h")) == 48


def test_prune_with_zero_keep_days_drops_all_closed_candles(db) -> None:
    manager = build(FakeKlineSource(UNIVERSE), db, keep_days=30)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 99))
        return await manager.prune_old_data(keep_days=0)

    # every candle closed before the clock
    assert asyncio.run(scenario()) == 100
    assert manager._load(("BTCUSDT", "1h")).is_empty
    assert db.load_candles("BTCUSDT", "1h") == []


def test_clear_cache_and_stats(db) -> None:
    manager = build(FakeKlineSource(UNIVERSE), db)

    async def scenario():
        await manager.fetch_range("BTCUSDT", "1h", *span(0, 9))
        await manager.fetch_range("ETHUSDT", "1h", *span(0, 19))

    asyncio.run(scenario())
    stats = manager.get_cache_stats()
    assert stats["total_records"] == 2
    assert stats["total_candles"] == 30
    assert stats["symbols"] == ["BTCUSDT", "ETHUSDT"]
    assert stats["unique_intervals"] == 1
    assert detail(manager)["data_start"].startswith("2023-11-14")
    assert detail(manager)["needs_update"] is False

    assert manager.clear_cache(symbol="ethusdt") == 1
    assert manager.get_cache_stats()["symbols"] == ["BTCUSDT"]
    assert manager.clear_cache() == 1
    assert manager.get_cache_stats()["total_records"] == 0


def test_records_survive_restart(db) -> None:
    asyncio.run(build(FakeKlineSource(UNIVERSE), db).fetch_range("BTCUSDT", "1h", *span(0, 30)))

    source = FakeKlineSource(UNIVERSE)
    result = asyncio.run(build(source, db).fetch_range("BTCUSDT", "1h", *span(5, 25)))

    assert result.mode == ServeMode.CACHE
    assert result.candles == UNIVERSE[5:26]
    assert source.calls == []


def test_interrupted_update_is_refetched_after_restart(db) -> None:
    manager = build(FakeKlineSource(UNIVERSE), db)
    asyncio.run(manager.fetch_range("BTCUSDT", "1h", *span(0, 30)))
    # simulate a crash mid-update
    store = manager._load(("BTCUSDT", "1h"))
    store.status = CacheStatus.UPDATING
    db.save_cache_record(store)

    source = FakeKlineSource(UNIVERSE)
    restarted = build(source, db)
    assert detail(restarted)["status"] == CacheStatus.ERROR.value
    result = asyncio.run(restarted.fetch_range("BTCUSDT", "1h", *span(5, 25)))

    assert result.mode == ServeMode.FULL_FETCH
    assert result.candles == UNIVERSE[5:26]
    assert len(source.calls) == 1
    assert detail(restarted)["status"] == CacheStatus.ACTIVE.value


def test_rejects_bad_requests(db) -> None:
    manager = build(FakeKlineSource(UNIVERSE), db)
    with pytest.raises(ValueError):
        asyncio.run(manager.fetch_range("BTCUSDT", "1h", 10, 5))
    with pytest.raises(ValueError):
        asyncio.run(manager.fetch_range("BTCUSDT", "9h", 0, 5))
