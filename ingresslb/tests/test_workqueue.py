from __future__ import annotations

import threading

import pytest

from ingresslb.src.workqueue import SYNC_KEY, CoalescingWorkQueue, TokenBucketRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTokenBucketRateLimiter:
    def test_burst_tokens_are_available_immediately(self) -> None:
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(qps=1.0, burst=3, clock=clock)

        assert [limiter.try_accept() for _ in range(4)] == [True, True, True, False]

    def test_tokens_refill_at_rate(self) -> None:
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(qps=2.0, burst=1, clock=clock)

        assert limiter.try_accept() is True
        assert limiter.try_accept() is False
        clock.now = 0.5
        assert limiter.try_accept() is True

    def test_refill_is_capped_at_burst(self) -> None:
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(qps=1.0, burst=2, clock=clock)
        limiter.try_accept()
        limiter.try_accept()

        clock.now = 100.0

        assert [limiter.try_accept() for _ in range(3)] == [True, True, False]

    def test_accept_returns_false_when_stopped(self) -> None:
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(qps=0.001, burst=1, clock=clock)
        limiter.try_accept()
        stop = threading.Event()
        stop.set()

        assert limiter.accept(stop) is False

    @pytest.mark.parametrize(("qps", "burst"), [(0, 1), (-1.0, 1), (1.0, 0)])
    def test_rejects_invalid_settings(self, qps: float, burst: int) -> None:
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(qps=qps, burst=burst)


def _queue(qps: float = 1000.0, burst: int = 1000) -> CoalescingWorkQueue:
    return CoalescingWorkQueue(TokenBucketRateLimiter(qps=qps, burst=burst))


class TestCoalescingWorkQueue:
    def test_many_enqueues_yield_one_run(self) -> None:
        queue = _queue()
        calls: list[str] = []

        for _ in range(50):
            queue.enqueue()
        assert len(queue) == 1

        assert queue.process_next(calls.append) is True
        assert calls == [SYNC_KEY]
        assert len(queue) == 0

    def test_enqueue_during_processing_runs_once_more(self) -> None:
        queue = _queue()
        calls: list[str] = []

        def handler(key: str) -> None:
            calls.append(key)
            if len(calls) == 1:
                queue.enqueue(key)
                queue.enqueue(key)

        queue.enqueue()
        queue.process_next(handler)
        assert len(queue) == 1

        queue.process_next(handler)
        assert calls == [SYNC_KEY, SYNC_KEY]
        assert len(queue) == 0

    def test_failed_handler_requeues_key(self) -> None:
        queue = _queue()
        attempts: list[str] = []

        def failing(key: str) -> None:
            attempts.append(key)
            raise RuntimeError("reload failed")

        queue.enqueue()
        assert queue.process_next(failing) is True

        assert attempts == [SYNC_KEY]
        assert len(queue) == 1

    def test_shutdown_stops_worker_and_ignores_new_work(self) -> None:
        queue = _queue()
        calls: list[str] = []
        worker = threading.Thread(target=queue.run, args=(calls.append,), daemon=True)
        worker.start()

        queue.shut_down()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert queue.shutting_down is True
        queue.enqueue()
        assert len(queue) == 0
        assert calls == []

    def test_worker_processes_enqueued_key(self) -> None:
        queue = _queue()
        processed = threading.Event()

        def handler(key: str) -> None:
            processed.set()

        worker = threading.Thread(target=queue.run, args=(handler,), daemon=True)
        worker.start()
        queue.enqueue()

        assert processed.wait(timeout=2)
        queue.shut_down()
        worker.join(timeout=2)
        assert not worker.is_alive()

    def test_rate_limiter_gates_each_run(self) -> None:
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(qps=1.0, burst=1, clock=clock)
        queue = CoalescingWorkQueue(limiter)
        calls: list[str] = []

        queue.enqueue()
        queue.process_next(calls.append)
        queue.enqueue()

        # The bucket is empty and the fake clock never advances, so the
        # worker blocks until shutdown releases it.
        worker = threading.Thread(target=queue.process_next, args=(calls.append,), daemon=True)
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert calls == [SYNC_KEY]

        queue.shut_down()
        worker.join(timeout=2)
        assert not worker.is_alive()
        assert calls == [SYNC_KEY]
