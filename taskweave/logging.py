"""
taskweave — Structured Logging with Correlation IDs

Every taskweave logger lives under the "taskweave" namespace. Once
configure_logging() is called they write one JSON object per line, using
OpenTelemetry field names (trace_id, span_id, service.name).

FlowTracer is the TraceCallback that Flow and SegmentRegistry report
traversal events to; it turns each event into such a line.

Usage:
    from taskweave.logging import FlowTracer, configure_logging

    configure_logging(level="INFO")
    tracer = FlowTracer(flow="article_writer")
    flow = Flow(name="article_writer", tracer=tracer)

    # Nested traversals get their own trace_id linked to the parent
    child = tracer.child(flow="research")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

ROOT_LOGGER = "taskweave"


def _utc_iso(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat()


class JSONFormatter(logging.Formatter):
    """One JSON object per record; `record.structured` fields are inlined."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service = {
            "service.name": service_name,
            "service.version": os.environ.get("TW_VERSION", "0.1.0"),
        }

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.service,
            **getattr(record, "structured", {}),
        }
        exc_type, exc_value = (record.exc_info or (None, None, None))[:2]
        if exc_type is not None:
            payload["exception.type"] = exc_type.__name__
            payload["exception.message"] = str(exc_value)
        return json.dumps(payload, default=str)


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Route all taskweave loggers to a single JSON handler on `stream`
    (stderr by default). Safe to call repeatedly: earlier handlers are
    dropped and child loggers fall back to the root level.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    for name, existing in list(logging.Logger.manager.loggerDict.items()):
        if name.startswith(ROOT_LOGGER + ".") and isinstance(existing, logging.Logger):
            existing.handlers.clear()
            existing.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric)
    handler.setFormatter(JSONFormatter(service_name=service_name))

    root = logging.getLogger(ROOT_LOGGER)
    root.handlers[:] = [handler]
    root.setLevel(numeric)
    root.propagate = False
    return root


def get_logger(name: str = "") -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def generate_trace_id() -> str:
    """32 hex chars."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """16 hex chars."""
    return uuid.uuid4().hex[16:]


# ═══════════════════════════════════════════════════════════════════
# Trace callback protocol
# ═══════════════════════════════════════════════════════════════════

class TraceCallback(Protocol):
    def on_flow_start(self, flow: str) -> None: ...
    def on_step_start(self, node_id: str, task_name: str, step: int) -> None: ...
    def on_step_end(self, node_id: str, task_name: str, elapsed: float, result_kind: str) -> None: ...
    def on_route_decision(self, from_node: str, to_node: str, decision_type: str, reason: str) -> None: ...
    def on_flow_end(self, flow: str, status: str, elapsed_s: float, steps: int) -> None: ...


class NullTrace:
    """No-op tracer when tracing is disabled."""
    def on_flow_start(self, *a, **kw): pass
    def on_step_start(self, *a, **kw): pass
    def on_step_end(self, *a, **kw): pass
    def on_route_decision(self, *a, **kw): pass
    def on_flow_end(self, *a, **kw): pass


_trace: TraceCallback = NullTrace()


def set_trace(callback: TraceCallback | None):
    global _trace
    _trace = callback or NullTrace()


def get_trace() -> TraceCallback:
    return _trace


# ═══════════════════════════════════════════════════════════════════
# Flow Tracer
# ═══════════════════════════════════════════════════════════════════

class FlowTracer:
    """
    TraceCallback writing to the "taskweave.trace" logger at INFO. All
    lines share the tracer's trace_id; a step's start and end lines share
    a span_id.
    """

    def __init__(self, flow: str = "", trace_id: str | None = None,
                 parent_trace_id: str | None = None):
        self.flow = flow
        self.trace_id = trace_id or generate_trace_id()
        self.parent_trace_id = parent_trace_id
        self._log = get_logger("trace")
        self._spans: dict[str, str] = {}

    def child(self, flow: str = "") -> FlowTracer:
        """Tracer for a nested traversal, linked through parent_trace_id."""
        return FlowTracer(flow=flow or self.flow, parent_trace_id=self.trace_id)

    def _emit(self, action: str, **fields: Any):
        structured = {"trace_id": self.trace_id, "flow": self.flow}
        if self.parent_trace_id:
            structured["parent_trace_id"] = self.parent_trace_id
        structured["action"] = action
        structured.update(fields)
        self._log.info(action, extra={"structured": structured})

    def on_flow_start(self, flow: str) -> None:
        self._emit("flow_start", flow=flow or self.flow)

    def on_step_start(self, node_id: str, task_name: str, step: int) -> None:
        span = self._spans[node_id] = generate_span_id()
        self._emit("step_start", node_id=node_id, task=task_name, step=step, span_id=span)

    def on_step_end(self, node_id: str, task_name: str, elapsed: float, result_kind: str) -> None:
        extra = {"span_id": self._spans[node_id]} if node_id in self._spans else {}
        self._emit("step_end", node_id=node_id, task=task_name,
                   latency_ms=round(elapsed * 1000, 1), result_kind=result_kind, **extra)

    def on_route_decision(self, from_node: str, to_node: str, decision_type: str, reason: str) -> None:
        self._emit("route_decision", from_node=from_node, to_node=to_node,
                   decision_type=decision_type, reason=reason[:500])

    def on_flow_end(self, flow: str, status: str, elapsed_s: float, steps: int) -> None:
        self._emit("flow_end", flow=flow or self.flow, status=status,
                   elapsed_s=round(elapsed_s, 3), steps=steps)
