from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from ingresslb.src.metrics import METRICS

# The configuration is always rebuilt from every mirrored object, so a single
# key is enough to represent "something changed".
SYNC_KEY = "ingress"


class TokenBucketRateLimiter:
    """Token bucket refilled at ``qps`` tokens per second, holding at most ``burst``."""

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)

    def try_accept(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def accept(self, stop_event: threading.Event) -> bool:
        """Block until a token is taken.  Returns False if *stop_event* fires first."""
        while not stop_event.is_set():
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait_seconds = (1.0 - self._tokens) / self.qps
            stop_event.wait(timeout=wait_seconds)
        return False


class CoalescingWorkQueue:
    """Deduplicating work queue drained by a single rate-limited worker.

    A key enqueued any number of times before the worker takes it is
    processed once.  A key enqueued while it is being processed is run once
    more afterwards.  The worker waits for a rate limiter token *before*
    taking the key, so notifications arriving during the wait fold into the
    same run.

    Handler exceptions put the key back; the rate limiter bounds how often a
    persistently failing sync is retried.
    """

    def __init__(
        self,
        rate_limiter: TokenBucketRateLimiter,
        logger: logging.Logger | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.logger = logger or logging.getLogger(__name__)
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._cond = threading.Condition()
        self._shutdown = threading.Event()

    def enqueue(self, key: str = SYNC_KEY) -> None:
        """Schedule *key*.  Idempotent and non-blocking; ignored after shutdown."""
        with self._cond:
            if self._shutdown.is_set() or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def shut_down(self) -> None:
        """Stop accepting work and wake the worker.  Pending keys are dropped."""
        with self._cond:
            self._shutdown.set()
            self._cond.notify_all()

    def _wait_for_item(self) -> bool:
        with self._cond:
            while not self._queue and not self._shutdown.is_set():
                self._cond.wait()
            return not self._shutdown.is_set()

    def _pop(self) -> str | None:
        with self._cond:
            if self._shutdown.is_set() or not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def _done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutdown.is_set():
                self._queue.append(key)
                self._cond.notify()

    def process_next(self, handler: Callable[[str], None]) -> bool:
        """Wait for work and a token, then run *handler* once.  Returns False on shutdown."""
        if not self._wait_for_item():
            return False

        wait_started = time.monotonic()
        if not self.rate_limiter.accept(self._shutdown):
            return False
        METRICS.rate_limit_wait_seconds.observe(time.monotonic() - wait_started)

        key = self._pop()
        if key is None:
            return not self._shutdown.is_set()

        retry = False
        try:
            handler(key)
        except Exception:
            retry = True
            self.logger.exception("Sync of %s failed; requeueing", key)
        finally:
            self._done(key)
        if retry:
            self.enqueue(key)
        return True

    def run(self, handler: Callable[[str], None]) -> None:
        """Worker loop.  Returns after :meth:`shut_down`, once the in-flight key finishes."""
        while self.process_next(handler):
            pass
