"""
taskweave — Provider Rate Limiting Tests

Tests:
  - Token bucket capacity, refill and clamping
  - Request and token limits each suspend until capacity returns
  - Acquisition never fails, waiters are served in turn
  - Usage recording charges actual tokens
  - Rate-limited tasks, limiter pool and config loading
"""

import asyncio
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from taskweave.rate_limit import (
    ProviderRateLimiter, RateLimitConfig, TokenBucket, estimate_tokens,
    get_rate_limiter, reset_all_limiters, with_rate_limit,
)
from taskweave.task import create_task


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock, rpm=None, tpm=None):
    return ProviderRateLimiter(
        "test",
        RateLimitConfig(requests_per_minute=rpm, tokens_per_minute=tpm),
        clock=clock,
        sleep=clock.sleep,
    )


class TestTokenBucket(unittest.TestCase):

    def test_starts_full_and_refills(self):
        clock = FakeClock()
        bucket = TokenBucket(60, clock)
        for _ in range(60):
            self.assertTrue(bucket.try_acquire())
        self.assertFalse(bucket.try_acquire())
        self.assertAlmostEqual(bucket.time_until(1), 1.0)
        clock.now += 1.0
        self.assertTrue(bucket.try_acquire())

    def test_refill_capped_at_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(10, clock)
        clock.now += 3600
        self.assertEqual(bucket.available_tokens, 10.0)

    def test_oversized_request_clamped(self):
        clock = FakeClock()
        bucket = TokenBucket(10, clock)
        self.assertEqual(bucket.time_until(50), 0.0)
        self.assertTrue(bucket.try_acquire(50))
        self.assertAlmostEqual(bucket.available_tokens, 0.0)

    def test_unlimited(self):
        bucket = TokenBucket(None, FakeClock())
        self.assertTrue(bucket.unlimited)
        self.assertEqual(bucket.time_until(10 ** 9), 0.0)
        self.assertTrue(bucket.try_acquire(10 ** 9))

    def test_charge_can_go_negative(self):
        clock = FakeClock()
        bucket = TokenBucket(60, clock)
        bucket.charge(90)
        self.assertAlmostEqual(bucket.available_tokens, -30.0)
        self.assertAlmostEqual(bucket.time_until(1), 31.0)


class TestProviderRateLimiter(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        reset_all_limiters()

    async def test_request_limit_suspends(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=2)
        self.assertEqual(await limiter.acquire(), 0.0)
        self.assertEqual(await limiter.acquire(), 0.0)
        waited = await limiter.acquire()
        self.assertAlmostEqual(waited, 30.0)
        self.assertAlmostEqual(clock.now, 30.0)

    async def test_token_limit_suspends(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=1000, tpm=1000)
        self.assertEqual(await limiter.acquire(600), 0.0)
        waited = await limiter.acquire(600)
        self.assertAlmostEqual(waited, 12.0)

    async def test_waits_for_the_tighter_limit(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=1, tpm=6000)
        await limiter.acquire(10)
        waited = await limiter.acquire(10)
        self.assertAlmostEqual(waited, 60.0)

    async def test_never_fails_for_large_requests(self):
        clock = FakeClock()
        limiter = _limiter(clock, tpm=100)
        await limiter.acquire(50)
        waited = await limiter.acquire(10_000)
        self.assertAlmostEqual(waited, 30.0)

    async def test_concurrent_waiters_served_in_turn(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=1)
        waits = await asyncio.gather(*(limiter.acquire() for _ in range(3)))
        self.assertEqual(sorted(round(w) for w in waits), [0, 60, 60])
        self.assertAlmostEqual(clock.now, 120.0)

    async def test_record_usage_charges_difference(self):
        clock = FakeClock()
        limiter = _limiter(clock, tpm=600)
        await limiter.acquire(100)
        limiter.record_usage(700, estimated=100)
        self.assertAlmostEqual(limiter.available["tokens"], -100.0)
        waited = await limiter.acquire(60)
        self.assertAlmostEqual(waited, 16.0)

    async def test_metrics(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=1)
        await limiter.acquire(5)
        await limiter.acquire(5)
        metrics = limiter.metrics
        self.assertEqual(metrics["total_requests"], 2)
        self.assertEqual(metrics["total_waits"], 1)
        self.assertEqual(metrics["tokens_consumed"], 10)
        self.assertAlmostEqual(metrics["avg_wait_ms"], 60000.0)


class TestRateLimitedTask(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        reset_all_limiters()

    async def test_wraps_task(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=60, tpm=1000)
        inner = create_task(lambda s: {"reply": s["prompt"].upper()}, name="model")
        task = with_rate_limit(
            inner, limiter,
            estimate_tokens=lambda s: estimate_tokens(s["prompt"]),
            usage_tokens=lambda s, r: estimate_tokens(s["prompt"] + r["reply"]),
        )
        result = await task.call({"prompt": "abcdefgh"})
        self.assertEqual(result, {"reply": "ABCDEFGH"})
        self.assertEqual(inner.stats.calls, 1)
        self.assertAlmostEqual(limiter.available["tokens"], 1000 - 4)
        self.assertEqual(limiter.metrics["peak_active"], 1)
        self.assertEqual(limiter.metrics["current_active"], 0)

    async def test_provider_name_uses_pool(self):
        task = with_rate_limit(lambda s: {}, "pooled")
        self.assertIs(task.limiter, get_rate_limiter("pooled"))
        await task.call({})
        self.assertEqual(get_rate_limiter("pooled").metrics["total_requests"], 1)

    async def test_inner_failure_releases_slot(self):
        def bad(state):
            raise RuntimeError("provider down")
        limiter = _limiter(FakeClock(), rpm=10)
        task = with_rate_limit(bad, limiter)
        with self.assertRaises(RuntimeError):
            await task.call({})
        self.assertEqual(limiter.metrics["current_active"], 0)


class TestLimiterPool(unittest.TestCase):

    def setUp(self):
        reset_all_limiters()

    def test_same_instance_per_provider(self):
        self.assertIs(get_rate_limiter("a", config={}), get_rate_limiter("a", config={}))

    def test_reset(self):
        first = get_rate_limiter("a", config={})
        reset_all_limiters()
        self.assertIsNot(first, get_rate_limiter("a", config={}))

    def test_config_loading(self):
        config = {"rate_limits": {
            "default": {"requests_per_minute": 30},
            "openai": {"requests_per_minute": 500, "tokens_per_minute": 90000},
        }}
        openai = get_rate_limiter("openai", config=config)
        self.assertEqual(openai.config.requests_per_minute, 500)
        self.assertEqual(openai.config.tokens_per_minute, 90000)
        other = get_rate_limiter("other", config=config)
        self.assertEqual(other.config.requests_per_minute, 30)
        self.assertIsNone(other.config.tokens_per_minute)


class TestLimiterAcrossEventLoops(unittest.TestCase):

    def test_bursts_under_separate_loops(self):
        clock = FakeClock()
        limiter = _limiter(clock, rpm=1)

        async def burst():
            return await asyncio.gather(*(limiter.acquire() for _ in range(3)))

        first = asyncio.run(burst())
        second = asyncio.run(burst())
        self.assertEqual(sorted(round(w) for w in first), [0, 60, 60])
        self.assertEqual([round(w) for w in second], [60, 60, 60])
        self.assertAlmostEqual(clock.now, 300.0)
        self.assertEqual(limiter.metrics["total_requests"], 6)


class TestEstimateTokens(unittest.TestCase):

    def test_four_chars_per_token(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("abcd" * 3), 3)
        self.assertEqual(estimate_tokens("abcde"), 2)


if __name__ == "__main__":
    unittest.main()
