"""
taskweave — Shared State

State is a plain dict threaded through a traversal. It is never
mutated in place: every step produces a new dict by shallow merge.

A task returns one of three result kinds:
  - a delta (plain mapping), merged over the state
  - Jump(target, delta): resume at a named segment
  - Outcome(value, delta): a routing value for Flow outcome edges

`delta` on Jump/Outcome holds state changes accumulated inside a
composite task before it produced the jump or outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Hashable, Union

GOTO_KEY = "_goto"

State = dict[str, Any]


@dataclass(frozen=True)
class Jump:
    """Stop normal routing and resume at segment `target`."""
    target: str
    delta: Mapping[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {**self.delta, GOTO_KEY: self.target}


@dataclass(frozen=True)
class Outcome:
    """A non-mapping task return value used for outcome-edge routing."""
    value: Hashable
    delta: Mapping[str, Any] = field(default_factory=dict)


Result = Union[dict[str, Any], Jump, Outcome]


def goto(target: str, **delta: Any) -> Jump:
    return Jump(target, delta)


def is_jump(value: Any) -> bool:
    if isinstance(value, Jump):
        return True
    return isinstance(value, Mapping) and GOTO_KEY in value


def normalize(value: Any) -> Result:
    """Convert a raw task return value into a tagged result."""
    if value is None:
        return {}
    if isinstance(value, (Jump, Outcome)):
        return value
    if isinstance(value, Mapping):
        if GOTO_KEY in value:
            delta = {k: v for k, v in value.items() if k != GOTO_KEY}
            return Jump(str(value[GOTO_KEY]), delta)
        return dict(value)
    return Outcome(value)


def delta_of(result: Result) -> Mapping[str, Any]:
    if isinstance(result, (Jump, Outcome)):
        return result.delta
    return result


def merge(state: Mapping[str, Any], delta: Mapping[str, Any]) -> State:
    """Last-write-wins, key-level shallow merge. Returns a new dict."""
    return {**state, **delta}


def apply(state: Mapping[str, Any], result: Result) -> State:
    return merge(state, delta_of(result))


def with_prior_delta(result: Result, prior: Mapping[str, Any]) -> Result:
    """Fold an earlier delta underneath a result's own delta."""
    if not prior:
        return result
    if isinstance(result, Jump):
        return Jump(result.target, {**prior, **result.delta})
    if isinstance(result, Outcome):
        return Outcome(result.value, {**prior, **result.delta})
    return {**prior, **result}
