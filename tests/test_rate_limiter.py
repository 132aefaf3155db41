"""
Tests for the rolling-window rate limiter shared by the source adapters.
"""

import asyncio
import threading

import pytest

from clinical_evidence.research.source_clients import RateLimitExceeded, WindowRateLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestWindowRateLimiter:

    def test_allows_up_to_quota(self):
        limiter = WindowRateLimiter("PLOS", max_requests=3, clock=FakeClock())
        for _ in range(3):
            limiter.acquire()
        assert limiter.remaining == 0

    def test_raises_beyond_quota(self):
        clock = FakeClock(100.0)
        limiter = WindowRateLimiter("PLOS", max_requests=2, window_seconds=60, clock=clock)
        limiter.acquire()
        clock.now = 110.0
        limiter.acquire()
        with pytest.raises(RateLimitExceeded) as exc:
            limiter.acquire()
        assert exc.value.source == "PLOS"
        assert exc.value.retry_after == pytest.approx(50.0)

    def test_window_rolls_forward(self):
        clock = FakeClock(0.0)
        limiter = WindowRateLimiter("TRIP", max_requests=1, window_seconds=60, clock=clock)
        limiter.acquire()
        clock.now = 59.9
        with pytest.raises(RateLimitExceeded):
            limiter.acquire()
        clock.now = 60.0
        limiter.acquire()
        assert limiter.remaining == 0

    def test_async_context_manager_takes_a_slot(self):
        limiter = WindowRateLimiter("BMC", max_requests=1, clock=FakeClock())

        async def run():
            async with limiter:
                pass
            async with limiter:
                pass

        with pytest.raises(RateLimitExceeded):
            asyncio.run(run())

    def test_concurrent_acquire_never_exceeds_quota(self):
        limiter = WindowRateLimiter("PubMed", max_requests=50, clock=FakeClock())
        granted = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                try:
                    limiter.acquire()
                except RateLimitExceeded:
                    continue
                with lock:
                    granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(granted) == 50
        assert limiter.remaining == 0
