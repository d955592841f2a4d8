# mcbuilder/core/controller.py
"""
Minecraft Builder – controller work queue
=========================================

A pool of asyncio workers draws resource keys from one queue and calls
the reconcile callback.  Guarantees:

• at most one in-flight reconcile per key; adding a key that is being
  reconciled marks it dirty and it runs again right after
• a key sits in the queue at most once
• the delay returned by the reconcile callback schedules the next pass;
  an explicit `add()` overrides a pending delayed requeue
• distinct keys reconcile in parallel, up to `workers`
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from mcbuilder.core.models import ResourceKey

ReconcileFn = Callable[[ResourceKey], Awaitable[Tuple[float, Optional[BaseException]]]]

# used when the reconcile callback itself blows up
_CRASH_DELAY = 60.0


class Controller:
    def __init__(self, reconcile: ReconcileFn, *, workers: int = 2, logger: Optional[logging.Logger] = None):
        self._reconcile = reconcile
        self.worker_count = workers
        self.log = logger or logging.getLogger(__name__)
        self._queue: "asyncio.Queue[ResourceKey]" = asyncio.Queue()
        self._queued: Set[ResourceKey] = set()
        self._active: Set[ResourceKey] = set()
        self._dirty: Set[ResourceKey] = set()
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []

    # ──────────────────────────────────────────────
    # Queue operations
    # ──────────────────────────────────────────────
    def add(self, key: ResourceKey) -> None:
        """Queue `key` now (dropping any delayed requeue)."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if key in self._active:
            self._dirty.add(key)
        elif key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def ensure(self, key: ResourceKey) -> None:
        """Queue `key` only if nothing is scheduled for it yet."""
        if key in self._timers or key in self._active or key in self._queued:
            return
        self.add(key)

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def is_scheduled(self, key: ResourceKey) -> bool:
        return key in self._timers or key in self._queued or key in self._active

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────
    def start(self) -> None:
        for i in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}"))

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    async def join(self) -> None:
        """Wait until the queue is drained and no reconcile is running."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._active.add(key)
            try:
                delay, error = await self._reconcile(key)
            except Exception:
                self.log.exception("worker %d: reconcile of %s crashed", index, key)
                delay, error = _CRASH_DELAY, None

            self._active.discard(key)
            if error is not None:
                self.log.debug("worker %d: %s finished with %r", index, key, error)
            if key in self._dirty:
                self._dirty.discard(key)
                self.add(key)
            else:
                self.add_after(key, delay)
            self._queue.task_done()
