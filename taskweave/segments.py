"""
taskweave — Segment Registry

Named entry points for non-linear navigation.

A "segment" is a Task registered under a name. Any task can return a
Jump to a segment name instead of a delta, and the registry resumes the
traversal there, carrying the merged state forward. Segments can jump
back to themselves or to earlier segments, so arbitrary graphs
(including cycles) are expressed by putting the termination condition
in state.

Usage:
    registry = SegmentRegistry()
    registry.register("draft", draft_task)
    registry.register("review", review_task.branch(
        lambda s: s["score"] >= 8,
        on_true=lambda s: {"approved": True},
        on_false=goto("draft"),
    ))

    final_state = await registry.execute("draft", {"topic": "..."})

Registries are ordinary objects: construct one per application (or per
test) and pass it to the Flows that should hand jumps off to it.
"""

import logging
import time
from typing import Any, Mapping

from taskweave.errors import SegmentNotFound, StepBudgetExceeded
from taskweave.logging import TraceCallback, get_trace
from taskweave.state import Jump, apply
from taskweave.task import Task, as_task

logger = logging.getLogger("taskweave.segments")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SegmentRegistry:
    """
    Name → Task table with jump-following execution.

    Re-registering a name replaces the previous segment. There is no step
    budget unless `max_jumps` is given; an unterminated cycle otherwise
    runs until one of its tasks stops jumping or fails.
    """

    def __init__(self, max_jumps: int | None = None, tracer: TraceCallback | None = None):
        self._segments: dict[str, Task] = {}
        self.max_jumps = max_jumps
        self.tracer = tracer

    def register(self, name: str, task: Any) -> Task:
        """Register a segment. Callables and goto mappings are coerced to Tasks."""
        segment = as_task(task, name=name)
        if name in self._segments:
            logger.debug("Replacing segment '%s'", name)
        self._segments[name] = segment
        return segment

    def unregister(self, name: str) -> Task | None:
        return self._segments.pop(name, None)

    def get(self, name: str) -> Task | None:
        return self._segments.get(name)

    def has(self, name: str) -> bool:
        return name in self._segments

    def __contains__(self, name: str) -> bool:
        return name in self._segments

    def __len__(self) -> int:
        return len(self._segments)

    def names(self) -> list[str]:
        return list(self._segments.keys())

    def describe(self) -> str:
        """Human-readable description of all registered segments."""
        if not self._segments:
            return "No segments registered."
        lines = []
        for name, task in self._segments.items():
            lines.append(f"  - {name}: {task.metadata.description}")
            if task.metadata.tags:
                lines.append(f"    Tags: {', '.join(task.metadata.tags)}")
        return "\n".join(lines)

    async def execute(self, name: str, state: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """
        Run segment `name`, following jumps until a segment returns a
        plain delta or outcome. Returns the final merged state.

        Raises:
            SegmentNotFound: start segment or a jump target is not registered
            StepBudgetExceeded: more than `max_jumps` jumps were followed
        """
        tracer = self.tracer or get_trace()
        label = f"segments:{name}"
        current = name
        state = dict(state or {})
        steps = 0
        jumps = 0
        status = "completed"
        t0 = time.monotonic()
        tracer.on_flow_start(label)

        try:
            while True:
                segment = self._segments.get(current)
                if segment is None:
                    raise SegmentNotFound(current, self.names())

                steps += 1
                tracer.on_step_start(current, segment.name, steps)
                s0 = time.monotonic()
                result = await segment.call(state)
                tracer.on_step_end(current, segment.name, time.monotonic() - s0,
                                   "jump" if isinstance(result, Jump) else "delta")

                state = apply(state, result)
                if not isinstance(result, Jump):
                    return state

                jumps += 1
                if self.max_jumps is not None and jumps > self.max_jumps:
                    raise StepBudgetExceeded(label, self.max_jumps)

                tracer.on_route_decision(current, result.target, "jump", "")
                logger.debug("Segment '%s' jumped to '%s'", current, result.target)
                current = result.target
        except Exception:
            status = "failed"
            raise
        finally:
            tracer.on_flow_end(label, status, time.monotonic() - t0, steps)
