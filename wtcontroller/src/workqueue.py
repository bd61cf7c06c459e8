from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from wtcontroller.src.metrics import METRICS


class RateLimitingQueue:
    """Deduplicating work queue with per-item exponential retry backoff.

    Semantics follow the classic controller work queue:

    * ``add`` collapses repeated adds of a pending item into one entry.
    * An item added while it is being processed (between ``get`` and
      ``done``) is not handed to a second consumer; it is re-queued once
      ``done`` is called, so no notification is lost.
    * ``add_rate_limited`` re-adds an item after ``base * 2**failures``
      seconds, capped at ``max_delay_seconds``.  ``forget`` resets that
      counter.  There is no retry cap.
    * ``shut_down`` wakes every blocked ``get`` and makes it return
      ``(None, True)``; later adds are ignored.

    Delayed items are kept in a heap and promoted by ``get`` itself, so the
    queue needs no background thread as long as a consumer is waiting.
    """

    def __init__(
        self,
        name: str,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

        self.name = name
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock

        self._cond = threading.Condition(threading.Lock())
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        # Delayed adds: item -> ready_at, plus a heap with lazy invalidation.
        self._waiting: dict[Hashable, float] = {}
        self._waiting_heap: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()

        self._failures: dict[Hashable, int] = {}

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _set_depth_metric(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        if item in self._processing:
            return
        self._queue.append(item)
        self._set_depth_metric()
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        """Add *item* once *delay_seconds* have elapsed.

        If the item is already waiting, the earlier deadline is kept.
        """
        if delay_seconds <= 0:
            self.add(item)
            return

        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            existing = self._waiting.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._waiting_heap, (ready_at, next(self._sequence), item))
            self._cond.notify()

    def when(self, item: Hashable) -> float:
        """Return the backoff for the next retry of *item* and record the failure."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        delay = self.base_delay_seconds * (2**failures)
        return min(self.max_delay_seconds, delay)

    def add_rate_limited(self, item: Hashable) -> float:
        delay = self.when(item)
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, delay)
        return delay

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items into the queue.

        Returns the seconds until the next delayed item is due, or ``None``
        when nothing is waiting.
        """
        now = self._clock()
        while self._waiting_heap:
            ready_at, _, item = self._waiting_heap[0]
            if self._waiting.get(item) != ready_at:
                heapq.heappop(self._waiting_heap)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting_heap)
            del self._waiting[item]
            self._add_locked(item)
        return None

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)`` for work, ``(None, True)`` once the queue is
        shut down, and ``(None, False)`` if *timeout* expired first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True

                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    self._set_depth_metric()
                    return item, False

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._set_depth_metric()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
