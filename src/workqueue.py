# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Rate limited work queue feeding the reconcile workers."""

import heapq
import threading
import time
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple


class ShutDown(Exception):
    """The queue was shut down."""


class RateLimitingQueue:
    """A work queue with per-key coalescing, delayed adds and exponential backoff.

    A key added while it waits is queued once. A key added while a worker
    processes it is queued again only when the worker calls ``done``, so a key
    is never processed by two workers at the same time.

    Args:
        base_delay: Backoff delay after the first failure, in seconds.
        max_delay: Upper bound of the backoff delay, in seconds.
        clock: Monotonic clock used for delayed adds.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: List[Hashable] = []
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._failures: Dict[Hashable, int] = {}
        self._counter = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already waiting."""
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._counter += 1
            heapq.heappush(self._waiting, (self._clock() + delay, self._counter, key))
            self._cond.notify()

    def when(self, key: Hashable) -> float:
        """Return the backoff delay of ``key`` and count one more failure."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._base_delay * 2**failures, self._max_delay)

    def add_rate_limited(self, key: Hashable) -> None:
        """Queue ``key`` after its backoff delay."""
        self.add_after(key, self.when(key))

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        """Return the number of failures recorded for ``key``."""
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_ready(self) -> Optional[float]:
        """Move the delayed keys that are due to the queue.

        Returns:
            The time until the next delayed key is due, if any.
        """
        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            if key in self._dirty:
                continue
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Hashable:
        """Take the next key to process, blocking until one is available.

        Raises:
            ShutDown: If the queue is shut down.
            TimeoutError: If no key became available within ``timeout``.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_ready()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    raise ShutDown()
                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise TimeoutError("no key available")
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark ``key`` processed, queuing it again if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and wake up the waiting consumers."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        """Return whether the queue is shut down."""
        with self._cond:
            return self._shutting_down
