"""
taskweave — Linear Engine (Flow)

A Flow is a pre-declared graph of nodes. Each node wraps a Task and an
edge table mapping outcome values (plus the sentinel "default") to the
id of the next node. Execution repeatedly runs the current node,
merges its delta into the accumulated state, and follows an edge until
none applies or the step budget runs out.

Routing after a node:
  1. Jump        → hand off to the bound SegmentRegistry, or stop with
                   the unresolved "_goto" marker in the returned state
  2. Outcome     → follow the edge keyed by the returned value, if any
  3. otherwise   → follow the "default" edge, else stop

Fan-out nodes (`all`, `map_reduce`) start their sub-tasks together on
the same state and merge the results in input order.

Usage:
    flow = (
        Flow.start(classify, name="triage")
        .on("urgent", escalate)
        .next(draft_reply)
        .all([check_tone, check_policy])
        .next(send)
    )
    final_state = await flow.run({"ticket": ticket})

    # Cycles: pass Node objects and re-reference them
    a, b = Node(step_a, "a"), Node(step_b, "b")
    loop = Flow(max_steps=10).next(a).next(b).next(a)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable, Iterable

from taskweave.errors import StepBudgetExceeded, TaskExecutionError
from taskweave.logging import TraceCallback, get_trace
from taskweave.state import GOTO_KEY, Jump, Outcome, Result, apply, delta_of, merge
from taskweave.task import Task, as_task, maybe_await

if TYPE_CHECKING:
    from taskweave.segments import SegmentRegistry

logger = logging.getLogger("taskweave.flow")

DEFAULT_EDGE = "default"
DEFAULT_MAX_STEPS = 100


# ═══════════════════════════════════════════════════════════════════
# Node
# ═══════════════════════════════════════════════════════════════════

class Node:
    """A task plus its outgoing edges."""

    def __init__(self, task: Any, id: str | None = None, name: str | None = None):
        self.task = as_task(task)
        self.id = id or f"node_{uuid.uuid4().hex[:7]}"
        self.name = name or self.task.name
        self.outcomes: dict[Any, str] = {}

    def next(self, node_id: str | Node) -> Node:
        self.outcomes[DEFAULT_EDGE] = _node_id(node_id)
        return self

    def on(self, outcome: Any, node_id: str | Node) -> Node:
        self.outcomes[outcome] = _node_id(node_id)
        return self

    def route(self, result: Result) -> tuple[str | None, str]:
        """Next node id and the kind of edge taken."""
        if isinstance(result, Outcome):
            try:
                if result.value in self.outcomes:
                    return self.outcomes[result.value], "outcome"
            except TypeError:
                pass  # unhashable outcome value
        return self.outcomes.get(DEFAULT_EDGE), DEFAULT_EDGE

    def __repr__(self) -> str:
        return f"<Node {self.id!r} task={self.task.name!r} edges={self.outcomes}>"


def _node_id(node: str | Node) -> str:
    return node.id if isinstance(node, Node) else node


# ═══════════════════════════════════════════════════════════════════
# Fan-out tasks
# ═══════════════════════════════════════════════════════════════════

def _batches(items: list, size: int | None) -> Iterable[list]:
    if not size or size >= len(items):
        yield items
        return
    for i in range(0, len(items), size):
        yield items[i:i + size]


async def _settle(aws: Iterable[Any]) -> list[Any]:
    """Await every sibling, then re-raise the first failure in input order."""
    outcomes = await asyncio.gather(*aws, return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return outcomes


async def _map_one(map_fn: Callable[[Any, dict[str, Any]], Any], item: Any, state: dict[str, Any]) -> Any:
    return await maybe_await(map_fn(item, state))


class ParallelTask(Task):
    """Runs sub-tasks concurrently on the same state; results merged in input order."""

    def __init__(
        self,
        tasks: Iterable[Any],
        concurrency: int | None = None,
        merge: bool = True,
        name: str = "parallel",
    ):
        self.tasks = [as_task(t) for t in tasks]
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.merge_results = merge
        super().__init__(
            name=name,
            description="Parallel: " + ", ".join(t.name for t in self.tasks),
        )

    async def execute(self, state: dict[str, Any]) -> Result:
        results: list[Result] = []
        for batch in _batches(self.tasks, self.concurrency):
            results.extend(await _settle(t.call(state) for t in batch))

        first_jump = next((r for r in results if isinstance(r, Jump)), None)

        if self.merge_results:
            acc: dict[str, Any] = {}
            for r in results:
                acc = merge(acc, delta_of(r))
        else:
            acc = {"results": [r.value if isinstance(r, Outcome) else r for r in results]}

        if first_jump is not None:
            logger.debug("[%s] sibling jumped to '%s'", self.name, first_jump.target)
            return Jump(first_jump.target, acc)
        return acc


class MapReduceTask(Task):
    """Maps `map_fn(item, state)` over items, batched by `concurrency`, then reduces."""

    def __init__(
        self,
        items: Iterable[Any] | Callable[[dict[str, Any]], Iterable[Any]],
        map_fn: Callable[[Any, dict[str, Any]], Any],
        reduce_fn: Callable[[list[Any], dict[str, Any]], Any] | None = None,
        concurrency: int | None = None,
        key: str = "results",
        name: str = "map_reduce",
    ):
        self.items = items if callable(items) else list(items)
        self.map_fn = map_fn
        self.reduce_fn = reduce_fn
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.key = key
        super().__init__(name=name, description=f"Map-reduce into '{key}'")

    async def execute(self, state: dict[str, Any]) -> Any:
        items = self.items(state) if callable(self.items) else self.items
        items = list(await maybe_await(items))

        results: list[Any] = []
        for batch in _batches(items, self.concurrency):
            results.extend(await _settle(_map_one(self.map_fn, item, state) for item in batch))

        if self.reduce_fn is not None:
            return await maybe_await(self.reduce_fn(results, state))
        return {self.key: results}


def parallel(tasks: Iterable[Any], concurrency: int | None = None, merge: bool = True,
             name: str = "parallel") -> ParallelTask:
    return ParallelTask(tasks, concurrency=concurrency, merge=merge, name=name)


def map_reduce(items, map_fn, reduce_fn=None, concurrency=None, key="results",
               name="map_reduce") -> MapReduceTask:
    return MapReduceTask(items, map_fn, reduce_fn, concurrency=concurrency, key=key, name=name)


# ═══════════════════════════════════════════════════════════════════
# Flow
# ═══════════════════════════════════════════════════════════════════

class Flow:
    """
    Statically wired node graph executor.

    `next` appends a node and wires the previous node's default edge to
    it. `on` adds an outcome edge from the last appended node without
    changing which node `next` continues from. Passing a Node that is
    already part of the flow only wires the edge, which is how cycles
    are built.
    """

    def __init__(
        self,
        name: str = "unnamed_flow",
        description: str = "",
        max_steps: int | None = None,
        registry: SegmentRegistry | None = None,
        tracer: TraceCallback | None = None,
    ):
        self.name = name
        self.description = description
        if max_steps is None:
            from taskweave.config import get_config_value
            max_steps = int(get_config_value("flow.max_steps", default=DEFAULT_MAX_STEPS))
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.max_steps = max_steps
        self.registry = registry
        self.tracer = tracer
        self.nodes: dict[str, Node] = {}
        self.start_id: str | None = None
        self.last_id: str | None = None
        self.reset_stats()

    @classmethod
    def start(cls, task: Any, id: str | None = None, **kwargs) -> Flow:
        return cls(**kwargs).next(task, id=id)

    def __repr__(self) -> str:
        return f"<Flow {self.name!r} nodes={list(self.nodes)}>"

    # ── Declaration ─────────────────────────────────────────────

    def _add_node(self, task: Any, id: str | None = None) -> Node:
        if isinstance(task, Node):
            node = task
        else:
            node = Node(task, id)
        if node.id in self.nodes and self.nodes[node.id] is not node:
            raise ValueError(f"Flow '{self.name}' already has a node with id '{node.id}'")
        self.nodes[node.id] = node
        return node

    def next(self, task: Any, id: str | None = None) -> Flow:
        node = self._add_node(task, id)
        if self.start_id is None:
            self.start_id = node.id
        elif self.last_id is not None:
            self.nodes[self.last_id].next(node.id)
        self.last_id = node.id
        return self

    def on(self, outcome: Any, task: Any, id: str | None = None) -> Flow:
        if self.last_id is None:
            raise ValueError("No node to add an outcome edge to; call start() or next() first")
        node = self._add_node(task, id)
        self.nodes[self.last_id].on(outcome, node.id)
        return self

    def all(self, tasks: Iterable[Any], concurrency: int | None = None, merge: bool = True,
            name: str = "parallel", id: str | None = None) -> Flow:
        return self.next(parallel(tasks, concurrency=concurrency, merge=merge, name=name), id=id)

    def map_reduce(self, items, map_fn, reduce_fn=None, concurrency=None, key="results",
                   name: str = "map_reduce", id: str | None = None) -> Flow:
        return self.next(
            map_reduce(items, map_fn, reduce_fn, concurrency=concurrency, key=key, name=name),
            id=id,
        )

    # ── Statistics ──────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        return {
            "runs": self.stats["runs"],
            "errors": self.stats["errors"],
            "total_time": self.stats["total_time"],
            "avg_time": self.stats["total_time"] / self.stats["runs"] if self.stats["runs"] else 0.0,
            "error_rate": self.stats["errors"] / self.stats["runs"] if self.stats["runs"] else 0.0,
            "node_stats": {k: dict(v) for k, v in self.stats["node_stats"].items()},
        }

    def reset_stats(self) -> Flow:
        self.stats: dict[str, Any] = {"runs": 0, "errors": 0, "total_time": 0.0, "node_stats": {}}
        return self

    # ── Execution ───────────────────────────────────────────────

    async def _run_node(self, node: Node, state: dict[str, Any], step: int,
                        tracer: TraceCallback) -> Result:
        node_stats = self.stats["node_stats"].setdefault(
            node.id, {"name": node.name, "calls": 0, "errors": 0, "total_time": 0.0},
        )
        node_stats["calls"] += 1
        tracer.on_step_start(node.id, node.task.name, step)
        t0 = time.monotonic()
        try:
            result = await node.task.call(state)
        except Exception as e:
            node_stats["errors"] += 1
            node_stats["total_time"] += time.monotonic() - t0
            logger.error("[%s] node %s (%s) failed: %s", self.name, node.name, node.id, e)
            raise
        elapsed = time.monotonic() - t0
        node_stats["total_time"] += elapsed
        tracer.on_step_end(node.id, node.task.name, elapsed, _result_kind(result))
        return result

    async def run(self, initial_state: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Execute the flow from its start node and return the final state."""
        if self.start_id is None:
            raise ValueError(f"Flow '{self.name}' has no start node")

        tracer = self.tracer or get_trace()
        self.stats["runs"] += 1
        state = dict(initial_state or {})
        node_id: str | None = self.start_id
        steps = 0
        status = "completed"
        t0 = time.monotonic()
        logger.info("[%s] starting flow", self.name)
        tracer.on_flow_start(self.name)

        try:
            while node_id is not None:
                if steps == self.max_steps:
                    raise StepBudgetExceeded(self.name, self.max_steps)

                node = self.nodes.get(node_id)
                if node is None:
                    raise TaskExecutionError(self.name, f"Flow '{self.name}' has no node '{node_id}'")

                steps += 1
                result = await self._run_node(node, state, steps, tracer)

                if isinstance(result, Jump):
                    state = merge(state, result.delta)
                    if self.registry is not None:
                        tracer.on_route_decision(node.id, result.target, "jump", "registry hand-off")
                        status = "handed_off"
                        state = await self.registry.execute(result.target, state)
                    else:
                        logger.warning(
                            "[%s] node %s jumped to '%s' but the flow has no registry; stopping",
                            self.name, node.id, result.target,
                        )
                        status = "jumped"
                        state = {**state, GOTO_KEY: result.target}
                    break

                state = apply(state, result)
                next_id, edge = node.route(result)
                if next_id is not None:
                    tracer.on_route_decision(node.id, next_id, edge, repr(getattr(result, "value", "")))
                    logger.debug("[%s] %s -> %s (%s)", self.name, node.id, next_id, edge)
                node_id = next_id
        except Exception:
            self.stats["errors"] += 1
            status = "failed"
            raise
        finally:
            elapsed = time.monotonic() - t0
            self.stats["total_time"] += elapsed
            tracer.on_flow_end(self.name, status, elapsed, steps)

        logger.info("[%s] flow %s in %.2fms after %d steps", self.name, status, elapsed * 1000, steps)
        return state

    def as_task(self, name: str | None = None, description: str | None = None) -> Task:
        """Wrap the flow as a Task whose result is the flow's final state."""
        return FlowTask(self, name=name, description=description)


class FlowTask(Task):
    def __init__(self, flow: Flow, name: str | None = None, description: str | None = None):
        self.flow = flow
        super().__init__(
            name=name or flow.name,
            description=description or flow.description or f"Flow '{flow.name}'",
        )

    async def execute(self, state: dict[str, Any]) -> Result:
        final = await self.flow.run(state)
        if GOTO_KEY in final:
            # unresolved jump: let the enclosing engine honour it
            return Jump(final[GOTO_KEY], {k: v for k, v in final.items() if k != GOTO_KEY})
        return final


def _result_kind(result: Result) -> str:
    if isinstance(result, Jump):
        return "jump"
    if isinstance(result, Outcome):
        return "outcome"
    return "delta"
