"""
taskweave — Task

The atomic, composable unit of work. A task takes a State and returns
a delta, a Jump, or an Outcome (see taskweave.state). Execution
functions may be plain functions or coroutines.

Every task kind (function task, retrying, rate-limited, timeout,
fan-out, flow-as-task) is a Task subclass overriding `execute`.
Combinators only ever talk to `Task.call`.

Usage:
    from taskweave.task import Task, create_task, param

    summarize = create_task(
        summarize_fn,
        name="summarize",
        description="Summarize the document",
        input=[param("text", ParamType.STRING, "Document text")],
    )
    delta = await summarize.call({"text": "..."})
"""

from __future__ import annotations

import inspect
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field

from taskweave.errors import MaxInvocationsExceeded, TaskExecutionError, ValidationFailed
from taskweave.state import Jump, Result, normalize

logger = logging.getLogger("taskweave.task")


# ═══════════════════════════════════════════════════════════════════
# Metadata
# ═══════════════════════════════════════════════════════════════════

class ParamType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"


class Param(BaseModel):
    """A declared input or output parameter of a task."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType = ParamType.ANY
    description: str = ""
    optional: bool = False


class Credential(BaseModel):
    """An external credential a task needs, resolved from the environment."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    required: bool = True


class TaskMetadata(BaseModel):
    """Immutable description of a task."""
    model_config = ConfigDict(frozen=True)

    name: str = "unnamed_task"
    description: str = "No description provided"
    input: tuple[Param, ...] = Field(default_factory=tuple)
    output: tuple[Param, ...] = Field(default_factory=tuple)
    required_credentials: tuple[Credential, ...] = Field(default_factory=tuple)
    examples: tuple[dict[str, Any], ...] = Field(default_factory=tuple)
    tags: tuple[str, ...] = Field(default_factory=tuple)

    def required_inputs(self) -> list[str]:
        return [p.name for p in self.input if not p.optional]


def param(name: str, type: ParamType | str = ParamType.ANY,
          description: str = "", optional: bool = False) -> Param:
    return Param(name=name, type=ParamType(type), description=description, optional=optional)


def credential(name: str, description: str = "", required: bool = True) -> Credential:
    return Credential(name=name, description=description, required=required)


# ═══════════════════════════════════════════════════════════════════
# Statistics
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TaskStats:
    calls: int = 0
    errors: int = 0
    total_time: float = 0.0  # seconds

    @property
    def avg_time(self) -> float:
        return self.total_time / self.calls if self.calls else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.calls if self.calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "errors": self.errors,
            "total_time": self.total_time,
            "avg_time": self.avg_time,
            "error_rate": self.error_rate,
        }


# ═══════════════════════════════════════════════════════════════════
# Task
# ═══════════════════════════════════════════════════════════════════

ExecuteFn = Callable[[dict[str, Any]], Any]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Task:
    """
    Base task. Subclasses override `execute`; function tasks carry an
    execution function set at construction or once via `with_execute`.
    """

    def __init__(
        self,
        name: str = "unnamed_task",
        description: str = "No description provided",
        *,
        fn: ExecuteFn | None = None,
        input: Iterable[Param] = (),
        output: Iterable[Param] = (),
        required_credentials: Iterable[Credential] = (),
        examples: Iterable[dict[str, Any]] = (),
        tags: Iterable[str] = (),
        max_invocations: int | None = None,
        validate_inputs: bool = False,
    ):
        self.metadata = TaskMetadata(
            name=name,
            description=description,
            input=tuple(input),
            output=tuple(output),
            required_credentials=tuple(required_credentials),
            examples=tuple(examples),
            tags=tuple(tags),
        )
        self._fn = fn
        self.max_invocations = max_invocations
        self.validate_inputs = validate_inputs
        self.stats = TaskStats()
        self._invocations = 0

    @property
    def name(self) -> str:
        return self.metadata.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"

    # ── Builders ────────────────────────────────────────────────

    def with_execute(self, fn: ExecuteFn) -> Task:
        if self._fn is not None:
            raise ValueError(f"Task '{self.name}' already has an execution function")
        self._fn = fn
        return self

    def with_credential(self, name: str, description: str = "", required: bool = True) -> Task:
        creds = self.metadata.required_credentials + (credential(name, description, required),)
        self.metadata = self.metadata.model_copy(update={"required_credentials": creds})
        return self

    def with_example(self, input: Any, output: Any) -> Task:
        examples = self.metadata.examples + ({"input": input, "output": output},)
        self.metadata = self.metadata.model_copy(update={"examples": examples})
        return self

    def with_tag(self, tag: str) -> Task:
        self.metadata = self.metadata.model_copy(update={"tags": self.metadata.tags + (tag,)})
        return self

    def missing_credentials(self, environ: Mapping[str, str] | None = None) -> list[str]:
        """Names of required credentials absent from the environment."""
        env = os.environ if environ is None else environ
        return [
            c.name for c in self.metadata.required_credentials
            if c.required and not env.get(c.name)
        ]

    # ── Statistics ──────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        return self.stats.to_dict()

    def reset_stats(self) -> Task:
        self.stats = TaskStats()
        self._invocations = 0
        return self

    # ── Execution ───────────────────────────────────────────────

    async def execute(self, state: dict[str, Any]) -> Any:
        if self._fn is None:
            raise TaskExecutionError(self.name, f"Task '{self.name}' has no execution function")
        return await maybe_await(self._fn(state))

    async def call(self, state: Mapping[str, Any]) -> Result:
        """Run the task once, recording statistics. Errors propagate unchanged."""
        if self.max_invocations is not None and self._invocations >= self.max_invocations:
            raise MaxInvocationsExceeded(self.name, self.max_invocations)

        self._invocations += 1
        self.stats.calls += 1
        t0 = time.monotonic()
        logger.debug("[%s] executing", self.name)
        try:
            if self.validate_inputs:
                self._check_inputs(state)
            raw = await self.execute(dict(state))
        except Exception as e:
            self.stats.errors += 1
            self.stats.total_time += time.monotonic() - t0
            logger.warning("[%s] failed: %s: %s", self.name, type(e).__name__, e)
            raise

        elapsed = time.monotonic() - t0
        self.stats.total_time += elapsed
        logger.debug("[%s] completed in %.2fms", self.name, elapsed * 1000)
        return normalize(raw)

    def _check_inputs(self, state: Mapping[str, Any]):
        missing = [k for k in self.metadata.required_inputs() if k not in state]
        if missing:
            raise ValidationFailed(
                self.name,
                f"Task '{self.name}' missing required state keys: {missing}",
                missing=missing,
            )

    def as_function(self) -> Callable[[Mapping[str, Any]], Any]:
        async def fn(state: Mapping[str, Any]) -> Result:
            return await self.call(state)
        fn.metadata = self.metadata
        return fn

    # ── Chaining (see taskweave.combinators) ────────────────────

    def then(self, *tasks: Any) -> Task:
        from taskweave.combinators import sequence
        return sequence(self, *tasks)

    def branch(self, predicate: Callable, on_true: Any, on_false: Any = None) -> Task:
        from taskweave.combinators import branch
        return branch(self, predicate, on_true, on_false)

    def switch(self, selector: Callable | str, cases: Mapping[Any, Any], default: Any = None) -> Task:
        from taskweave.combinators import switch_on
        return switch_on(self, selector, cases, default)

    def catch(self, handler: Callable) -> Task:
        from taskweave.combinators import recover
        return recover(self, handler)


def create_task(fn: ExecuteFn, name: str | None = None, description: str = "", **kwargs) -> Task:
    """Build a Task around a plain function or coroutine function."""
    return Task(
        name=name or getattr(fn, "__name__", None) or "anonymous_task",
        description=description or (inspect.getdoc(fn) or "").split("\n")[0] or "No description provided",
        fn=fn,
        **kwargs,
    )


def as_task(obj: Any, name: str | None = None) -> Task:
    """Coerce a Task, callable, Jump, or `_goto` mapping into a Task."""
    if isinstance(obj, Task):
        return obj
    if isinstance(obj, Jump) or (isinstance(obj, Mapping) and "_goto" in obj):
        jump = normalize(obj)
        return Task(name=name or f"goto_{jump.target}", description=f"Jump to '{jump.target}'",
                    fn=lambda state: jump)
    if callable(obj):
        return create_task(obj, name=name)
    raise TypeError(f"Cannot use {type(obj).__name__} as a task")
