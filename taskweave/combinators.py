"""
taskweave — Chain Combinators

Pure functions that build a new Task around existing ones:

  sequence(A, B, ...)                 run in order, merging between steps
  branch(A, predicate, on_true, on_false)
  switch_on(A, selector, cases, default)
  recover(A, handler)                 turn a failure into a delta
  jump_to(name) / jump_if(predicate, name)

Merging happens once per physical task invocation. A composite returns
the accumulated delta of its steps, so the caller observes exactly the
state it would have built by running the steps by hand. A Jump from any
inner task short-circuits the rest of the chain and is handed back to
the nearest engine (Flow or SegmentRegistry), carrying the delta
accumulated so far.

Predicates, selectors and handlers may be plain functions or coroutines.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable

from taskweave.state import Jump, Result, apply, delta_of, with_prior_delta
from taskweave.task import Task, as_task, maybe_await

logger = logging.getLogger("taskweave.combinators")


def sequence(first: Any, *rest: Any, name: str | None = None) -> Task:
    steps = [as_task(t) for t in (first, *rest)]

    async def _run(state: dict[str, Any]) -> Result:
        acc: dict[str, Any] = {}
        result: Result = {}
        for step in steps:
            result = await step.call(state)
            if isinstance(result, Jump):
                return with_prior_delta(result, acc)
            delta = delta_of(result)
            acc = {**acc, **delta}
            state = apply(state, result)
        return with_prior_delta(result, acc)

    return Task(
        name=name or " -> ".join(s.name for s in steps),
        description="Sequence of " + ", ".join(s.name for s in steps),
        fn=_run,
    )


def branch(
    task: Any,
    predicate: Callable[[dict[str, Any]], Any],
    on_true: Any,
    on_false: Any = None,
    name: str | None = None,
) -> Task:
    head = as_task(task)
    true_task = as_task(on_true) if on_true is not None else None
    false_task = as_task(on_false) if on_false is not None else None

    async def _run(state: dict[str, Any]) -> Result:
        result = await head.call(state)
        if isinstance(result, Jump):
            return result
        merged = apply(state, result)
        taken = bool(await maybe_await(predicate(merged)))
        arm = true_task if taken else false_task
        logger.debug("[%s] branch -> %s", head.name, arm.name if arm else "pass-through")
        if arm is None:
            return result
        return with_prior_delta(await arm.call(merged), delta_of(result))

    return Task(
        name=name or f"branch({head.name})",
        description=f"Branch after {head.name}",
        fn=_run,
    )


def switch_on(
    task: Any,
    selector: Callable[[dict[str, Any]], Any] | str,
    cases: Mapping[Any, Any],
    default: Any = None,
    name: str | None = None,
) -> Task:
    head = as_task(task)
    case_tasks = {key: as_task(value, name=f"case_{key}") for key, value in cases.items()}
    default_task = as_task(default, name="default_case") if default is not None else None

    async def _run(state: dict[str, Any]) -> Result:
        result = await head.call(state)
        if isinstance(result, Jump):
            return result
        merged = apply(state, result)
        if isinstance(selector, str):
            key = merged.get(selector)
        else:
            key = await maybe_await(selector(merged))

        try:
            chosen = case_tasks.get(key, default_task)
        except TypeError:
            # unhashable selector value
            chosen = default_task
        logger.debug("[%s] switch %r -> %s", head.name, key, chosen.name if chosen else "pass-through")
        if chosen is None:
            return result
        return with_prior_delta(await chosen.call(merged), delta_of(result))

    return Task(
        name=name or f"switch({head.name})",
        description=f"Switch after {head.name} over {len(case_tasks)} case(s)",
        fn=_run,
    )


def recover(
    task: Any,
    handler: Callable[[Exception, dict[str, Any]], Any],
    name: str | None = None,
) -> Task:
    inner = as_task(task)

    async def _run(state: dict[str, Any]) -> Any:
        try:
            return await inner.call(state)
        except Exception as e:
            logger.info("[%s] recovering from %s: %s", inner.name, type(e).__name__, e)
            return await maybe_await(handler(e, state))

    return Task(
        name=name or f"recover({inner.name})",
        description=f"{inner.name} with error recovery",
        fn=_run,
    )


def jump_to(target: str, name: str | None = None) -> Task:
    return Task(
        name=name or f"jump_to({target})",
        description=f"Jump to segment '{target}'",
        fn=lambda state: Jump(target),
    )


def jump_if(predicate: Callable[[dict[str, Any]], Any], target: str, name: str | None = None) -> Task:
    async def _run(state: dict[str, Any]) -> Result:
        if await maybe_await(predicate(state)):
            return Jump(target)
        return {}

    return Task(
        name=name or f"jump_if({target})",
        description=f"Jump to segment '{target}' when the condition holds",
        fn=_run,
    )
