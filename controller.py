"""Periodic sync loops driving a fixed-size worker pool.

Each controller (force-sleep, idling) enqueues every project once per tick.
The queue holds a key at most once and never hands the same key to two
workers at the same time, so per-project state is only ever touched by one
worker.
"""
import logging
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Callable, Dict, Hashable, Iterable, List, Optional

logger = logging.getLogger(__name__)


class WorkQueue:
    """De-duplicating FIFO of keys.

    ``add`` on a key that is already waiting is a no-op; ``add`` on a key
    that is being processed re-queues it once the worker calls ``done``.
    The queue therefore never holds more entries than there are distinct keys.
    """

    def __init__(self):
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._cond = threading.Condition()
        self._shutting_down = False

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, block: bool = True, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Next key to process, or None on shutdown / when empty and not blocking."""
        with self._cond:
            if block:
                deadline = None if timeout is None else time.monotonic() + timeout
                while not self._queue and not self._shutting_down:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        return None
                    self._cond.wait(remaining)
            if self._shutting_down or not self._queue:
                return None
            key = self._queue.popleft()
            self._dirty.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def in_flight(self, key: Hashable) -> bool:
        """True while a worker holds ``key`` between ``get`` and ``done``."""
        with self._cond:
            return key in self._processing

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class SyncStats:
    """Thread-safe counters for one controller, read by the metrics endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self.syncs_total = 0
        self.sync_failures_total = 0
        self.sync_seconds_total = 0.0
        self.last_sync_seconds = 0.0
        self.max_sync_seconds = 0.0
        self.last_cycle_at: Optional[float] = None

    def observe(self, seconds: float, ok: bool) -> None:
        with self._lock:
            self.syncs_total += 1
            if not ok:
                self.sync_failures_total += 1
            self.sync_seconds_total += seconds
            self.last_sync_seconds = seconds
            self.max_sync_seconds = max(self.max_sync_seconds, seconds)

    def mark_cycle(self) -> None:
        with self._lock:
            self.last_cycle_at = time.time()

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            out = dict(self._counters)
            out.update({
                'syncs_total': self.syncs_total,
                'sync_failures_total': self.sync_failures_total,
                'sync_seconds_total': self.sync_seconds_total,
                'last_sync_seconds': self.last_sync_seconds,
                'max_sync_seconds': self.max_sync_seconds,
            })
            if self.last_cycle_at is not None:
                out['last_cycle_timestamp_seconds'] = self.last_cycle_at
            return out


class PeriodicController:
    """Enqueue ``list_keys()`` every ``period`` and run ``sync(key)`` on ``workers`` threads.

    A failing sync is logged and counted; it never stops the loop or other keys.
    """

    def __init__(self, name: str, sync: Callable[[str], object],
                 list_keys: Callable[[], Iterable[str]], period: timedelta, workers: int,
                 before_cycle: Optional[Callable[[List[str]], None]] = None):
        if workers <= 0:
            raise ValueError("workers must be positive")
        self.name = name
        self.period = period
        self.workers = workers
        self.stats = SyncStats()
        self._sync = sync
        self._list_keys = list_keys
        self._before_cycle = before_cycle
        self.queue = WorkQueue()
        self._threads: List[threading.Thread] = []

    def run(self, stop: threading.Event) -> None:
        """Start the ticker and worker threads; returns immediately."""
        for i in range(self.workers):
            t = threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        ticker = threading.Thread(target=self._tick_loop, args=(stop,), name=f"{self.name}-ticker", daemon=True)
        ticker.start()
        self._threads.append(ticker)
        logger.info(f"{self.name}: started {self.workers} workers, sync every {self.period}")

    def enqueue_all(self) -> List[str]:
        keys = list(self._list_keys())
        if self._before_cycle is not None:
            self._before_cycle(keys)
        for key in keys:
            self.queue.add(key)
        self.stats.mark_cycle()
        return keys

    def run_once(self) -> None:
        """Run one full cycle to completion on a temporary worker pool."""
        self.enqueue_all()
        threads = [
            threading.Thread(target=self._drain, name=f"{self.name}-once-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _tick_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                keys = self.enqueue_all()
                logger.debug(f"{self.name}: queued {len(keys)} projects")
            except Exception:
                logger.exception(f"{self.name}: failed to enumerate projects, retrying next tick")
            stop.wait(self.period.total_seconds())
        logger.info(f"{self.name}: stop requested, draining in-flight work")
        self.queue.shutdown()

    def _worker_loop(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            self._process(key)

    def _drain(self) -> None:
        while True:
            key = self.queue.get(block=False)
            if key is None:
                return
            self._process(key)

    def _process(self, key) -> None:
        started = time.monotonic()
        ok = True
        try:
            self._sync(key)
        except Exception:
            ok = False
            logger.exception(f"{self.name}: sync of {key} failed, will retry next tick")
        finally:
            self.stats.observe(time.monotonic() - started, ok)
            self.queue.done(key)
