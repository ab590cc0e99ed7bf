"""
taskweave — Structured Exception Hierarchy

Typed errors so callers can distinguish between:
- Task-level faults detected by the engine → recover or retry
- Traversal faults (step budget, unknown segment) → abort the run

Exceptions raised by a task body are never wrapped. They propagate
unchanged to the nearest `recover` combinator or to the caller.

Each error carries a `detail` dict and a `retryable` flag.
"""

from __future__ import annotations


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class TaskweaveError(Exception):
    """Base exception for all taskweave errors."""
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Task Errors: raised around a single task invocation
# ═══════════════════════════════════════════════════════════════

class TaskExecutionError(TaskweaveError):
    """A task could not execute or produced an unusable result."""

    def __init__(self, task_name: str, message: str = "", **kwargs):
        self.task_name = task_name
        super().__init__(message or f"Task '{task_name}' failed", task=task_name, **kwargs)


class MaxInvocationsExceeded(TaskExecutionError):
    """Task invocation ceiling reached; the execution function did not run."""

    def __init__(self, task_name: str, limit: int):
        self.limit = limit
        super().__init__(
            task_name,
            f"Task '{task_name}' reached its invocation ceiling ({limit})",
            limit=limit,
        )


class TaskTimeout(TaskExecutionError):
    """Task exceeded its per-call deadline."""
    retryable = True

    def __init__(self, task_name: str, seconds: float):
        self.seconds = seconds
        super().__init__(
            task_name,
            f"Task '{task_name}' timed out after {seconds:g}s",
            seconds=seconds,
        )


class ValidationFailed(TaskExecutionError):
    """A declared check rejected a task's input state or its result."""
    retryable = True

    def __init__(self, task_name: str, message: str = "", **kwargs):
        super().__init__(task_name, message or f"Validation failed for task '{task_name}'", **kwargs)


# ═══════════════════════════════════════════════════════════════
# Traversal Errors: raised by Flow and SegmentRegistry
# ═══════════════════════════════════════════════════════════════

class StepBudgetExceeded(TaskweaveError):
    """A traversal ran out of its step budget."""

    def __init__(self, name: str, budget: int):
        self.name = name
        self.budget = budget
        super().__init__(
            f"'{name}' exceeded its step budget ({budget})",
            name=name,
            budget=budget,
        )


class SegmentNotFound(TaskweaveError):
    """No segment is registered under the requested name."""

    def __init__(self, segment: str, registered: list[str] | None = None):
        self.segment = segment
        self.registered = registered or []
        super().__init__(
            f"Segment '{segment}' not found. Registered: {self.registered}",
            segment=segment,
            registered=self.registered,
        )
