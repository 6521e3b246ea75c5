"""Delaying, de-duplicating work queue for per-key reconciliation.

Keys are delivered to at most one worker at a time. A key added while it is
being processed is marked dirty and handed out again once the worker calls
``done``. Delayed adds sit in a heap until their deadline passes.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

_DEFAULT_BASE_DELAY_SECONDS = 0.005
_DEFAULT_MAX_DELAY_SECONDS = 1000.0


class DelayingQueue:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        base_delay_seconds: float = _DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = _DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        self._clock = clock
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        with self._cond:
            attempts = self._failures.get(key, 0)
            self._failures[key] = attempts + 1
        delay = min(self._base_delay * (2**attempts), self._max_delay)
        logger.debug("Requeueing %s in %.3fs (attempt %d)", key, delay, attempts + 1)
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is ready.

        Returns ``None`` once the queue is shut down and drained, or when
        ``timeout`` elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                wait: float | None = None
                if self._waiting:
                    wait = max(0.0, self._waiting[0][0] - self._clock())
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
