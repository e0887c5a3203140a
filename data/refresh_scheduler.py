"""
Refresh Scheduler — owns the periodic cache maintenance loops.

Default tasks:
  - cache-update  (hourly): refresh stale ACTIVE records
  - cache-warmup  (daily):  preload popular pairs
  - cache-cleanup (weekly): prune candles past the retention window

Started and stopped explicitly by the host process. A failing run is
logged and the loop keeps going.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from data.cache_manager import CacheManager
    from config import CacheConfig, SchedulerConfig

logger = logging.getLogger(__name__)

TaskFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    name: str
    interval_sec: float
    func: TaskFunc
    run_on_start: bool = False
    run_count: int = 0
    error_count: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    handle: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.handle is not None and not self.handle.done()


class RefreshScheduler:
    """Named, cancellable periodic tasks on the running event loop."""

    def __init__(self):
        self._tasks: Dict[str, ScheduledTask] = {}
        self._running = False

    @classmethod
    def with_default_tasks(
        cls,
        cache: "CacheManager",
        scheduler_config: "SchedulerConfig",
        cache_config: "CacheConfig",
    ) -> "RefreshScheduler":
        scheduler = cls()
        run_on_start = scheduler_config.run_on_start

        scheduler.add_task(
            "cache-update",
            scheduler_config.update_interval_sec,
            cache.update_all_caches,
            run_on_start=run_on_start,
        )
        scheduler.add_task(
            "cache-warmup",
            scheduler_config.warmup_interval_sec,
            lambda: cache.warmup_cache(
                cache_config.warmup_symbols,
                cache_config.warmup_intervals,
                cache_config.warmup_days,
            ),
            run_on_start=run_on_start,
        )
        scheduler.add_task(
            "cache-cleanup",
            scheduler_config.cleanup_interval_sec,
            lambda: cache.prune_old_data(cache_config.keep_days),
        )
        return scheduler

    @property
    def is_running(self) -> bool:
        return self._running

    def add_task(self, name: str, interval_sec: float, func: TaskFunc, run_on_start: bool = False):
        if name in self._tasks:
            raise ValueError(f"Task {name!r} already registered")
        if interval_sec <= 0:
            raise ValueError(f"Task {name!r} needs a positive interval, got {interval_sec}")

        task = ScheduledTask(name, interval_sec, func, run_on_start)
        self._tasks[name] = task
        if self._running:
            task.handle = asyncio.create_task(self._loop(task))

    def start(self):
        """Launch every registered loop. Must be called inside a running event loop."""
        if self._running:
            logger.warning("[SCHED] Already running")
            return
        self._running = True
        for task in self._tasks.values():
            task.handle = asyncio.create_task(self._loop(task))
        logger.info(f"[SCHED] Started {len(self._tasks)} tasks: {', '.join(self._tasks)}")

    async def stop(self):
        """Cancel all loops and wait for them to unwind."""
        self._running = False
        handles = [t.handle for t in self._tasks.values() if t.handle is not None]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        for task in self._tasks.values():
            task.handle = None
        logger.info("[SCHED] Stopped")

    async def run_now(self, name: str) -> Any:
        """Run one task immediately, outside its schedule."""
        return await self._run_once(self._tasks[name])

    async def _loop(self, task: ScheduledTask):
        if task.run_on_start:
            await self._run_once(task)
        while self._running:
            await asyncio.sleep(task.interval_sec)
            if not self._running:
                break
            await self._run_once(task)

    async def _run_once(self, task: ScheduledTask) -> Any:
        logger.info(f"[SCHED] Running {task.name}")
        task.last_run = datetime.now(timezone.utc)
        task.run_count += 1
        try:
            result = await task.func()
            task.last_error = None
            return result
        except Exception as e:
            task.error_count += 1
            task.last_error = str(e)
            logger.error(f"[SCHED] {task.name} failed: {e}", exc_info=True)
            return None

    def get_status(self) -> Dict[str, Any]:
        tasks: List[Dict[str, Any]] = []
        for task in self._tasks.values():
            tasks.append({
                "name": task.name,
                "interval_sec": task.interval_sec,
                "running": task.running,
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "last_error": task.last_error,
            })
        return {"running": self._running, "tasks": tasks}
