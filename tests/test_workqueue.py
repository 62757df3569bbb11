"""Tests for the work queue and rate limiters."""

import asyncio

import pytest

from jobsync.workqueue import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestItemExponentialFailureRateLimiter:
    """Tests for per-key exponential backoff."""

    def test_delay_doubles_per_failure(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0)

        delays = [limiter.when("ns1/demo") for _ in range(4)]

        assert delays == [0.005, 0.01, 0.02, 0.04]
        assert limiter.num_requeues("ns1/demo") == 4

    def test_delay_is_capped(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=10.0)

        delays = [limiter.when("ns1/demo") for _ in range(100)]

        assert delays[-1] == 10.0
        assert max(delays) == 10.0

    def test_keys_are_independent(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=100.0)
        limiter.when("ns1/a")
        limiter.when("ns1/a")

        assert limiter.when("ns1/b") == 1.0

    def test_forget_resets_backoff(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=100.0)
        limiter.when("ns1/demo")
        limiter.when("ns1/demo")

        limiter.forget("ns1/demo")

        assert limiter.num_requeues("ns1/demo") == 0
        assert limiter.when("ns1/demo") == 1.0

    def test_rejects_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            ItemExponentialFailureRateLimiter(base_delay=0, max_delay=1.0)
        with pytest.raises(ValueError):
            ItemExponentialFailureRateLimiter(base_delay=2.0, max_delay=1.0)


class TestBucketRateLimiter:
    """Tests for the overall token bucket."""

    def test_burst_is_free(self) -> None:
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10.0, burst=3, clock=clock)

        assert [limiter.when("k") for _ in range(3)] == [0.0, 0.0, 0.0]

    def test_empty_bucket_delays(self) -> None:
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10.0, burst=1, clock=clock)
        limiter.when("k")

        assert limiter.when("k") == pytest.approx(0.1)
        assert limiter.when("k") == pytest.approx(0.2)

    def test_tokens_refill_over_time(self) -> None:
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10.0, burst=1, clock=clock)
        limiter.when("k")

        clock.now = 1.0

        assert limiter.when("k") == 0.0


class TestMaxOfRateLimiter:
    """Tests for combined limiters."""

    def test_takes_longest_delay(self) -> None:
        clock = FakeClock()
        limiter = MaxOfRateLimiter(
            ItemExponentialFailureRateLimiter(base_delay=0.5, max_delay=100.0),
            BucketRateLimiter(qps=1.0, burst=1, clock=clock),
        )

        assert limiter.when("k") == 0.5
        # Backoff and empty bucket both ask for one second
        assert limiter.when("k") == pytest.approx(1.0)
        assert limiter.num_requeues("k") == 2

    def test_forget_reaches_all_limiters(self) -> None:
        backoff = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=100.0)
        limiter = MaxOfRateLimiter(backoff)
        limiter.when("k")

        limiter.forget("k")

        assert backoff.num_requeues("k") == 0


class TestRateLimitingQueue:
    """Tests for single-flight queue semantics."""

    @pytest.mark.asyncio
    async def test_add_deduplicates_queued_keys(self) -> None:
        queue = RateLimitingQueue()

        queue.add("ns1/demo")
        queue.add("ns1/demo")

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_get_returns_keys_in_order(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/a")
        queue.add("ns1/b")

        first, _ = await queue.get()
        second, _ = await queue.get()

        assert (first, second) == ("ns1/a", "ns1/b")

    @pytest.mark.asyncio
    async def test_processing_key_is_not_handed_out_twice(self) -> None:
        """A key re-added while processing waits for done()."""
        queue = RateLimitingQueue()
        queue.add("ns1/demo")
        key, _ = await queue.get()

        queue.add("ns1/demo")

        assert len(queue) == 0
        assert queue.is_processing("ns1/demo")
        assert queue.is_dirty("ns1/demo")

        queue.done(key)

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_many_adds_while_processing_redeliver_once(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/demo")
        key, _ = await queue.get()

        for _ in range(5):
            queue.add("ns1/demo")
        queue.done(key)

        assert len(queue) == 1
        again, _ = await queue.get()
        queue.done(again)
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_done_without_readd_drops_key(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/demo")
        key, _ = await queue.get()

        queue.done(key)

        assert len(queue) == 0
        assert not queue.is_processing("ns1/demo")

    @pytest.mark.asyncio
    async def test_get_blocks_until_add(self) -> None:
        queue = RateLimitingQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.add("ns1/demo")

        key, shutdown = await asyncio.wait_for(getter, timeout=1.0)
        assert key == "ns1/demo"
        assert shutdown is False

    @pytest.mark.asyncio
    async def test_add_after_delays_key(self) -> None:
        queue = RateLimitingQueue()

        queue.add_after("ns1/demo", 0.05)

        assert len(queue) == 0
        assert queue.delayed_count == 1
        key, _ = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert key == "ns1/demo"
        assert queue.delayed_count == 0

    @pytest.mark.asyncio
    async def test_add_after_keeps_earliest(self) -> None:
        queue = RateLimitingQueue()

        queue.add_after("ns1/demo", 10.0)
        queue.add_after("ns1/demo", 0.01)

        key, _ = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert key == "ns1/demo"

    @pytest.mark.asyncio
    async def test_add_after_non_positive_adds_now(self) -> None:
        queue = RateLimitingQueue()

        queue.add_after("ns1/demo", 0)

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_add_rate_limited_backs_off(self) -> None:
        queue = RateLimitingQueue(
            ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=1.0)
        )

        queue.add_rate_limited("ns1/demo")
        queue.add_rate_limited("ns1/demo")

        assert queue.num_requeues("ns1/demo") == 2
        key, _ = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert key == "ns1/demo"

        queue.forget(key)
        assert queue.num_requeues("ns1/demo") == 0

    @pytest.mark.asyncio
    async def test_shutdown_wakes_getters(self) -> None:
        queue = RateLimitingQueue()
        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shut_down()

        results = await asyncio.wait_for(asyncio.gather(*getters), timeout=1.0)
        assert results == [(None, True)] * 3

    @pytest.mark.asyncio
    async def test_no_items_after_shutdown(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/demo")

        queue.shut_down()
        queue.add("ns1/other")

        assert await queue.get() == (None, True)
        assert queue.shutting_down

    @pytest.mark.asyncio
    async def test_shutdown_cancels_delayed_adds(self) -> None:
        queue = RateLimitingQueue()
        queue.add_after("ns1/demo", 10.0)

        queue.shut_down()

        assert queue.delayed_count == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/demo")
        key, _ = await queue.get()

        async def finish_later() -> None:
            await asyncio.sleep(0.05)
            queue.done(key)

        finisher = asyncio.create_task(finish_later())
        drained = await queue.shut_down_with_drain(timeout=1.0)
        await finisher

        assert drained is True

    @pytest.mark.asyncio
    async def test_drain_times_out(self) -> None:
        queue = RateLimitingQueue()
        queue.add("ns1/demo")
        await queue.get()

        drained = await queue.shut_down_with_drain(timeout=0.05)

        assert drained is False

    def test_add_threadsafe_requires_loop(self) -> None:
        queue = RateLimitingQueue()

        with pytest.raises(RuntimeError):
            queue.add_threadsafe("ns1/demo")
