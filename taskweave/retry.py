"""
taskweave — Retry with Exponential Backoff

Wraps a task with:
  - Configurable retry on failed attempts (all errors by default)
  - Exponential backoff between retries, capped, with optional jitter
  - Optional result validation (a rejected result is a failed attempt)
  - Structured logging of every attempt

Each attempt produces an explicit Attempt record (success, or one of
the failure statuses) which the loop inspects; exceptions are only
raised again once the loop has decided to give up.

Usage:
    from taskweave.retry import RetryPolicy, with_retry, get_retry_policy

    policy = get_retry_policy("openai")
    fetch = with_retry(fetch_task, policy)
    delta = await fetch.call(state)
    fetch.attempt_log   # records of the last call
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from taskweave.errors import ValidationFailed
from taskweave.state import Result
from taskweave.task import Task, as_task, maybe_await

logger = logging.getLogger("taskweave.retry")

ShouldRetry = Callable[[Exception, int], bool]
Validator = Callable[[Result], Any]


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 1.0       # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 30.0       # cap on delay between retries
    jitter: float = 0.0             # ±fraction randomization on backoff
    should_retry: ShouldRetry | None = None   # None → retry every error
    validate: Validator | None = None         # falsy return rejects the result

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


DEFAULT_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════
# Attempt records
# ═══════════════════════════════════════════════════════════════════

SUCCESS = "success"
RETRYABLE_ERROR = "retryable_error"
NON_RETRYABLE = "non_retryable"
VALIDATION_FAILED = "validation_failed"


@dataclass
class Attempt:
    """Outcome of a single attempt: either a result or an error."""
    number: int                     # 1-based
    status: str = SUCCESS
    result: Result | None = None
    error: Exception | None = None
    latency_s: float = 0.0
    backoff_s: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "attempt": self.number,
            "status": self.status,
            "latency_s": round(self.latency_s, 4),
        }
        if self.error is not None:
            entry["error"] = str(self.error)[:200]
        if self.backoff_s is not None:
            entry["backoff_s"] = round(self.backoff_s, 4)
        return entry


# ═══════════════════════════════════════════════════════════════════
# Config Loader
# ═══════════════════════════════════════════════════════════════════

def get_retry_policy(provider: str | None = None, config: dict[str, Any] | None = None) -> RetryPolicy:
    """
    Load retry policy from config for the given provider.

    Config format:
        retry:
          default:
            max_attempts: 3
          openai:
            max_attempts: 5
            backoff_base: 0.5
            transient_only: true
    """
    from taskweave.config import get_config_value, load_config

    cfg = config if config is not None else load_config()
    retry_cfg = get_config_value("retry", cfg, {}) or {}

    provider_cfg = {}
    if provider and provider in retry_cfg:
        provider_cfg = retry_cfg[provider]
    elif "default" in retry_cfg:
        provider_cfg = retry_cfg["default"]

    if not provider_cfg:
        return RetryPolicy()

    return RetryPolicy(
        max_attempts=int(provider_cfg.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(provider_cfg.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(provider_cfg.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(provider_cfg.get("jitter", DEFAULT_POLICY.jitter)),
        should_retry=is_transient_error if provider_cfg.get("transient_only") else None,
    )


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

RETRYABLE_EXCEPTIONS = (TimeoutError, asyncio.TimeoutError, ConnectionError)
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def is_transient_error(error: Exception, attempt: int = 1) -> bool:
    """Ready-made `should_retry` gate: timeouts, connection errors, 429/5xx."""
    if getattr(error, "retryable", False):
        return True
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True

    err_str = str(error).lower()

    # Auth errors are NOT retryable
    if "401" in err_str or "403" in err_str or "unauthorized" in err_str or "forbidden" in err_str:
        return False

    if "429" in err_str or "rate limit" in err_str or "too many requests" in err_str:
        return True

    for code in RETRYABLE_STATUS_CODES:
        if str(code) in err_str:
            return True

    if any(term in err_str for term in ["timeout", "timed out", "connection", "unavailable", "econnreset"]):
        return True

    return False


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay after failed attempt `attempt` (0-based)."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range) if jitter_range else capped
    return max(0.0, actual)


class RetryingTask(Task):
    """A task that re-invokes its inner task according to a RetryPolicy."""

    def __init__(
        self,
        inner: Any,
        policy: RetryPolicy | None = None,
        name: str | None = None,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.inner = as_task(inner)
        self.policy = policy or RetryPolicy()
        self.sleep_fn = sleep_fn
        self.attempt_log: list[dict[str, Any]] = []
        super().__init__(
            name=name or f"retry({self.inner.name})",
            description=f"{self.inner.name} with up to {self.policy.max_attempts} attempts",
        )

    async def _attempt(self, state: dict[str, Any], number: int) -> Attempt:
        t0 = time.monotonic()
        try:
            result = await self.inner.call(state)
        except Exception as e:
            return Attempt(number, RETRYABLE_ERROR, error=e, latency_s=time.monotonic() - t0)

        attempt = Attempt(number, SUCCESS, result=result, latency_s=time.monotonic() - t0)
        if self.policy.validate is not None and not await maybe_await(self.policy.validate(result)):
            attempt.status = VALIDATION_FAILED
            attempt.error = ValidationFailed(
                self.inner.name,
                f"Result of '{self.inner.name}' rejected on attempt {number}",
                attempt=number,
            )
        return attempt

    def _gate(self, attempt: Attempt) -> bool:
        if attempt.status == VALIDATION_FAILED:
            return True
        if self.policy.should_retry is None:
            return True
        return bool(self.policy.should_retry(attempt.error, attempt.number))

    async def execute(self, state: dict[str, Any]) -> Result:
        policy = self.policy
        self.attempt_log = []
        last: Attempt | None = None

        for i in range(policy.max_attempts):
            last = await self._attempt(state, i + 1)
            if last.ok:
                self.attempt_log.append(last.to_dict())
                if i:
                    logger.info("[%s] succeeded on attempt %d", self.inner.name, i + 1)
                return last.result

            if not self._gate(last):
                last.status = NON_RETRYABLE
                self.attempt_log.append(last.to_dict())
                logger.error(
                    "[%s] non-retryable error: %s", self.inner.name, str(last.error)[:100],
                )
                raise last.error

            logger.warning(
                "[%s] attempt %d/%d failed (%s): %s",
                self.inner.name, i + 1, policy.max_attempts, last.status, str(last.error)[:100],
            )
            if i < policy.max_attempts - 1:
                last.backoff_s = calculate_backoff(i, policy)
                self.attempt_log.append(last.to_dict())
                await self.sleep_fn(last.backoff_s)
            else:
                self.attempt_log.append(last.to_dict())

        logger.error(
            "[%s] all %d attempts exhausted", self.inner.name, policy.max_attempts,
        )
        raise last.error


def with_retry(
    task: Any,
    policy: RetryPolicy | None = None,
    *,
    name: str | None = None,
    sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **policy_kwargs,
) -> RetryingTask:
    """Wrap a task with retry. Keyword arguments build a RetryPolicy."""
    if policy is None:
        policy = RetryPolicy(**policy_kwargs)
    elif policy_kwargs:
        raise TypeError("Pass either a RetryPolicy or policy keyword arguments, not both")
    return RetryingTask(task, policy, name=name, sleep_fn=sleep_fn)
