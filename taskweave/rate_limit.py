"""
taskweave — Provider Rate Limiting

Keeps calls to an external provider under its published limits with two
independent token buckets per provider:
  - requests per minute (each call costs one)
  - tokens per minute (each call costs its estimated token count)

A call that would exceed either limit suspends until both buckets have
capacity. Acquisition never fails; it only waits.

Config (taskweave.yaml):
    rate_limits:
      default:
        requests_per_minute: 60
      openai:
        requests_per_minute: 500
        tokens_per_minute: 90000

Usage:
    limiter = get_rate_limiter("openai")
    await limiter.acquire(tokens=estimate_tokens(prompt))
    ...
    limiter.record_usage(actual_tokens, estimated=estimate_tokens(prompt))

    # or wrap a task
    summarize = with_rate_limit(summarize, "openai",
                                estimate_tokens=lambda s: estimate_tokens(s["text"]))
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from taskweave.state import Result
from taskweave.task import Task, as_task, maybe_await

logger = logging.getLogger("taskweave.rate_limit")

WINDOW_SECONDS = 60.0
_EPSILON = 1e-9  # float slack when comparing refilled balances


# ═══════════════════════════════════════════════════════════════════
# Rate Limit Config
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RateLimitConfig:
    """Configuration for a provider's rate limits. None or 0 means unlimited."""
    requests_per_minute: int | None = 60
    tokens_per_minute: int | None = None


DEFAULT_CONFIG = RateLimitConfig()


def estimate_tokens(text: str) -> int:
    """Rough token count for budgeting: about four characters per token."""
    return math.ceil(len(text or "") / 4)


# ═══════════════════════════════════════════════════════════════════
# Token Bucket
# ═══════════════════════════════════════════════════════════════════

class TokenBucket:
    """
    Token bucket algorithm for rate limiting.

    Capacity equals the per-minute limit; tokens replenish continuously at
    limit/60 per second and the bucket starts full. A request larger than
    the capacity is clamped to it so it can eventually proceed.
    """

    def __init__(self, rate_per_minute: int | None, clock: Callable[[], float] = time.monotonic):
        self.unlimited = not rate_per_minute
        self.max_tokens = float(rate_per_minute or 0)
        self.rate = self.max_tokens / WINDOW_SECONDS  # tokens per second
        self._clock = clock
        self._tokens = self.max_tokens
        self._last_refill = clock()

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.rate)
        self._last_refill = now

    def _clamp(self, amount: float) -> float:
        return min(max(0.0, float(amount)), self.max_tokens)

    def time_until(self, amount: float = 1.0) -> float:
        """Seconds until `amount` tokens are available (0 if available now)."""
        if self.unlimited:
            return 0.0
        self._refill()
        deficit = self._clamp(amount) - self._tokens
        if deficit <= _EPSILON:
            return 0.0
        return deficit / self.rate

    def try_acquire(self, amount: float = 1.0) -> bool:
        """Consume `amount` tokens if available. Returns True on success."""
        if self.time_until(amount) > 0:
            return False
        if not self.unlimited:
            self._tokens -= self._clamp(amount)
        return True

    def charge(self, amount: float):
        """Consume tokens unconditionally; the balance may go negative."""
        if self.unlimited:
            return
        self._refill()
        self._tokens = min(self.max_tokens, self._tokens - amount)

    @property
    def available_tokens(self) -> float:
        if self.unlimited:
            return math.inf
        self._refill()
        return self._tokens


# ═══════════════════════════════════════════════════════════════════
# Provider Rate Limiter
# ═══════════════════════════════════════════════════════════════════

class ProviderRateLimiter:
    """
    Dual-bucket limiter for one provider.

    Waiters are served one at a time under an asyncio.Lock, so a queued
    call is never starved by later arrivals.
    """

    def __init__(
        self,
        provider: str = "default",
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.config = config or DEFAULT_CONFIG
        self._requests = TokenBucket(self.config.requests_per_minute, clock)
        self._tokens = TokenBucket(self.config.tokens_per_minute, clock)
        self._sleep = sleep
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None
        self._metrics = _LimiterMetrics()

    def _loop_lock(self) -> asyncio.Lock:
        """Waiter lock for the running event loop; a pooled limiter outlives loops."""
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def acquire(self, tokens: int = 0) -> float:
        """
        Suspend until one request and `tokens` tokens are available, then
        consume them. Returns the number of seconds spent waiting.
        """
        waited = 0.0
        async with self._loop_lock():
            while True:
                wait = max(self._requests.time_until(1), self._tokens.time_until(tokens))
                if wait <= 0:
                    self._requests.try_acquire(1)
                    self._tokens.try_acquire(tokens)
                    break
                logger.debug(
                    "[%s] rate limited, waiting %.2fs (tokens=%d)",
                    self.provider, wait, tokens,
                )
                await self._sleep(wait)
                waited += wait

        self._metrics.record_acquire(waited * 1000, tokens)
        if waited:
            logger.info("[%s] rate limit wait %.2fs", self.provider, waited)
        return waited

    def record_usage(self, tokens: int, estimated: int = 0):
        """Charge actual token usage after a call, net of the estimate already consumed."""
        diff = tokens - estimated
        if diff:
            self._tokens.charge(diff)
        self._metrics.record_usage(diff)

    @property
    def available(self) -> dict[str, float]:
        return {
            "requests": self._requests.available_tokens,
            "tokens": self._tokens.available_tokens,
        }

    @property
    def metrics(self) -> dict[str, Any]:
        return self._metrics.snapshot()


class _LimiterMetrics:
    """Counters for the rate limiter."""

    def __init__(self):
        self._total_requests = 0
        self._total_waits = 0
        self._total_wait_ms = 0.0
        self._tokens_consumed = 0
        self._current_active = 0
        self._peak_active = 0

    def record_acquire(self, wait_ms: float, tokens: int):
        self._total_requests += 1
        self._tokens_consumed += tokens
        if wait_ms > 0:
            self._total_waits += 1
            self._total_wait_ms += wait_ms

    def record_usage(self, tokens: int):
        self._tokens_consumed += tokens

    def enter(self):
        self._current_active += 1
        self._peak_active = max(self._peak_active, self._current_active)

    def exit(self):
        self._current_active = max(0, self._current_active - 1)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_requests": self._total_requests,
            "total_waits": self._total_waits,
            "avg_wait_ms": round(
                self._total_wait_ms / self._total_waits, 1
            ) if self._total_waits > 0 else 0.0,
            "tokens_consumed": self._tokens_consumed,
            "current_active": self._current_active,
            "peak_active": self._peak_active,
        }


# ═══════════════════════════════════════════════════════════════════
# Rate-limited task
# ═══════════════════════════════════════════════════════════════════

class RateLimitedTask(Task):
    """Acquires provider capacity before each call of the inner task."""

    def __init__(
        self,
        inner: Any,
        limiter: ProviderRateLimiter | str = "default",
        estimate_tokens: Callable[[dict[str, Any]], Any] | None = None,
        usage_tokens: Callable[[dict[str, Any], Result], Any] | None = None,
        name: str | None = None,
    ):
        self.inner = as_task(inner)
        self.limiter = get_rate_limiter(limiter) if isinstance(limiter, str) else limiter
        self.estimate_tokens = estimate_tokens
        self.usage_tokens = usage_tokens
        super().__init__(
            name=name or f"rate_limited({self.inner.name})",
            description=f"{self.inner.name} limited by provider '{self.limiter.provider}'",
        )

    async def execute(self, state: dict[str, Any]) -> Result:
        estimated = 0
        if self.estimate_tokens is not None:
            estimated = int(await maybe_await(self.estimate_tokens(state)) or 0)
        await self.limiter.acquire(estimated)

        self.limiter._metrics.enter()
        try:
            result = await self.inner.call(state)
        finally:
            self.limiter._metrics.exit()

        if self.usage_tokens is not None:
            actual = int(await maybe_await(self.usage_tokens(state, result)) or 0)
            self.limiter.record_usage(actual, estimated=estimated)
        return result


def with_rate_limit(
    task: Any,
    provider: ProviderRateLimiter | str = "default",
    *,
    estimate_tokens: Callable[[dict[str, Any]], Any] | None = None,
    usage_tokens: Callable[[dict[str, Any], Result], Any] | None = None,
    name: str | None = None,
) -> RateLimitedTask:
    return RateLimitedTask(task, provider, estimate_tokens, usage_tokens, name=name)


# ═══════════════════════════════════════════════════════════════════
# Global Limiter Registry
# ═══════════════════════════════════════════════════════════════════

_limiters: dict[str, ProviderRateLimiter] = {}
_limiter_lock = threading.Lock()


def get_rate_limiter(provider: str, config: dict[str, Any] | None = None) -> ProviderRateLimiter:
    """Get or create the shared rate limiter for a provider."""
    with _limiter_lock:
        if provider not in _limiters:
            _limiters[provider] = ProviderRateLimiter(
                provider, _load_config_for_provider(provider, config),
            )
        return _limiters[provider]


def reset_all_limiters():
    """Reset all limiters. For testing."""
    with _limiter_lock:
        _limiters.clear()


def _load_config_for_provider(provider: str, config: dict[str, Any] | None = None) -> RateLimitConfig:
    from taskweave.config import get_config_value, load_config

    cfg = config if config is not None else load_config()
    rate_cfg = get_config_value("rate_limits", cfg, {}) or {}
    provider_cfg = rate_cfg.get(provider, rate_cfg.get("default", {}))

    if not provider_cfg:
        return DEFAULT_CONFIG

    return RateLimitConfig(
        requests_per_minute=provider_cfg.get("requests_per_minute", DEFAULT_CONFIG.requests_per_minute),
        tokens_per_minute=provider_cfg.get("tokens_per_minute", DEFAULT_CONFIG.tokens_per_minute),
    )
