from __future__ import annotations

import heapq
import itertools
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from secretsync.src.metrics import ControllerMetrics

DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0


class WorkQueue:
    """Deduplicating work queue with delayed adds and per-key backoff.

    - A key queued several times before a worker picks it up is processed once.
    - A key is never handed to two workers at the same time; adding a key
      that is being processed re-queues it once :meth:`done` is called.
    - :meth:`add_rate_limited` delays a key by an exponentially growing,
      jittered amount (``base`` doubling up to ``max``) until :meth:`forget`
      resets it.
    - A key waiting on several :meth:`add_after` deadlines keeps only the
      earliest one.
    """

    def __init__(
        self,
        metrics: ControllerMetrics | None = None,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.metrics = metrics
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._waiting: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._sequence = itertools.count()
        self._shutting_down = False
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self.clock() + delay
            waiting = self._waiting.get(key)
            if waiting is not None and waiting <= due:
                return
            self._waiting[key] = due
            heapq.heappush(self._delayed, (due, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Schedule *key* after its backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2**failures), self.max_delay)
        delay *= 0.5 + random.random()  # noqa: S311
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready; ``None`` on shutdown or timeout."""
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._report_depth_locked()
                    return key
                if self._shutting_down:
                    return None

                wait_for = None
                if self._delayed:
                    wait_for = max(self._delayed[0][0] - self.clock(), 0.0)
                if deadline is not None:
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._report_depth_locked()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._report_depth_locked()
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            due, _, key = heapq.heappop(self._delayed)
            # Superseded by an earlier deadline for the same key.
            if self._waiting.get(key) != due:
                continue
            del self._waiting[key]
            self._add_locked(key)

    def _report_depth_locked(self) -> None:
        if self.metrics is not None:
            self.metrics.queue_depth.set(len(self._queue))
