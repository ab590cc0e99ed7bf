"""
taskweave — Per-call Timeout

    slow = with_timeout(fetch_task, seconds=10)

Expiry raises TaskTimeout, an ordinary task failure: it can be retried
(it is marked retryable) or turned into a delta by `recover`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from taskweave.errors import TaskTimeout
from taskweave.state import Result
from taskweave.task import Task, as_task

logger = logging.getLogger("taskweave.timeout")


class TimeoutTask(Task):
    def __init__(self, inner: Any, seconds: float, name: str | None = None):
        if seconds <= 0:
            raise ValueError("seconds must be > 0")
        self.inner = as_task(inner)
        self.seconds = seconds
        super().__init__(
            name=name or f"timeout({self.inner.name})",
            description=f"{self.inner.name} with a {seconds:g}s deadline",
        )

    async def execute(self, state: dict[str, Any]) -> Result:
        inner_error: BaseException | None = None

        async def _call() -> Result:
            nonlocal inner_error
            try:
                return await self.inner.call(state)
            except asyncio.TimeoutError as e:
                inner_error = e
                raise

        try:
            return await asyncio.wait_for(_call(), timeout=self.seconds)
        except asyncio.TimeoutError as e:
            # the inner task's own timeout, not our deadline
            if e is inner_error:
                raise
            logger.warning("[%s] timed out after %.2fs", self.inner.name, self.seconds)
            raise TaskTimeout(self.inner.name, self.seconds) from None


def with_timeout(task: Any, seconds: float, name: str | None = None) -> TimeoutTask:
    return TimeoutTask(task, seconds, name=name)
