"""
taskweave — Built-in State Tools

Small ready-made tasks for common glue work inside a flow:

  MemoryStore         key/value memory shared across steps and runs
  ConversationMemory  bounded chat history
  prompt_template     fill "{{ var }}" placeholders from state
  json_parser         pull a JSON object out of free text, with fallback
  text_chunker        split long text into overlapping chunks
  state_snapshot      deep copy of the current state

Each returns a Task that reads its input from a state key and writes its
output to another, so it drops into any chain or flow.

Usage:
    flow = (
        Flow.start(prompt_template("Summarize: {{ text }}"))
        .next(call_model)
        .next(json_parser(input_key="response", output_key="summary"))
    )
"""

from __future__ import annotations

import copy
import json
import logging
import re
import time
from collections import deque
from typing import Any, Mapping

from taskweave.task import ParamType, Task, param

logger = logging.getLogger("taskweave.tools")


# ═══════════════════════════════════════════════════════════════════
# Memory
# ═══════════════════════════════════════════════════════════════════

class MemoryStore(Task):
    """
    In-process key/value memory. Values are deep-copied on the way in
    and out so callers never share references with the store.

    As a task it reads a request from `state[input_key]`: either a key
    string (a get) or {"action", "key", "value"} with action one of
    get, set, delete, clear, keys, all.
    """

    ACTIONS = ("get", "set", "delete", "clear", "keys", "all")

    def __init__(self, name: str = "memory", input_key: str = "memory",
                 output_key: str = "memory_result"):
        super().__init__(
            name=name,
            description="Store and retrieve values from memory",
            input=[param(input_key, ParamType.ANY, "Key string or {action, key, value}")],
            output=[param(output_key, ParamType.ANY, "The stored value or operation result")],
        )
        self.input_key = input_key
        self.output_key = output_key
        self._store: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._store:
            return default
        return copy.deepcopy(self._store[key])

    def set(self, key: str, value: Any) -> bool:
        self._store[key] = copy.deepcopy(value)
        return True

    def delete(self, key: str) -> bool:
        return self._store.pop(key, _MISSING) is not _MISSING

    def clear(self) -> bool:
        self._store.clear()
        return True

    def keys(self) -> list[str]:
        return list(self._store.keys())

    def all(self) -> dict[str, Any]:
        return copy.deepcopy(self._store)

    def __len__(self) -> int:
        return len(self._store)

    async def execute(self, state: dict[str, Any]) -> dict[str, Any]:
        request = state.get(self.input_key)
        if isinstance(request, str):
            request = {"key": request}
        if not isinstance(request, Mapping):
            raise ValueError(f"'{self.input_key}' must be a key or a request mapping, got {type(request).__name__}")

        action = request.get("action", "get")
        key = request.get("key")
        if action == "get":
            result = self.get(key)
        elif action == "set":
            result = self.set(key, request.get("value"))
        elif action == "delete":
            result = self.delete(key)
        elif action == "clear":
            result = self.clear()
        elif action == "keys":
            result = self.keys()
        elif action == "all":
            result = self.all()
        else:
            raise ValueError(f"Unknown memory action: {action}")

        logger.debug("[%s] %s %s", self.name, action, key or "")
        return {self.output_key: result}


_MISSING = object()


class ConversationMemory(Task):
    """
    Bounded chat history: the oldest message is dropped once more than
    `max_messages` are held.

    As a task it reads `state[input_key]`: a {"role", "content"} message
    to append, or {"action": "messages" | "last" | "by_role" | "clear",
    "limit", "role"}. The result goes to `state[output_key]`.
    """

    def __init__(self, max_messages: int = 100, name: str = "conversation",
                 input_key: str = "message", output_key: str = "conversation"):
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        super().__init__(
            name=name,
            description="Manage conversation history",
            input=[param(input_key, ParamType.OBJECT, "Message to append or a query")],
            output=[param(output_key, ParamType.ANY, "Appended message or query result")],
        )
        self.max_messages = max_messages
        self.input_key = input_key
        self.output_key = output_key
        self._messages: deque[dict[str, Any]] = deque(maxlen=max_messages)

    def add_message(self, role: str, content: Any) -> dict[str, Any]:
        message = {"role": role, "content": copy.deepcopy(content), "timestamp": time.time()}
        self._messages.append(message)
        return dict(message)

    def get_messages(self, limit: int | None = None) -> list[dict[str, Any]]:
        messages = list(self._messages)
        if limit:
            messages = messages[-limit:]
        return copy.deepcopy(messages)

    def last_message(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._messages[-1]) if self._messages else None

    def messages_by_role(self, role: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(m) for m in self._messages if m["role"] == role]

    def clear(self) -> bool:
        self._messages.clear()
        return True

    def __len__(self) -> int:
        return len(self._messages)

    async def execute(self, state: dict[str, Any]) -> dict[str, Any]:
        request = state.get(self.input_key)
        if not isinstance(request, Mapping):
            raise ValueError(f"'{self.input_key}' must be a message or query mapping")

        action = request.get("action", "add")
        if action == "add":
            if "role" not in request:
                raise ValueError("A message needs a 'role'")
            result = self.add_message(request["role"], request.get("content"))
        elif action == "messages":
            result = self.get_messages(request.get("limit"))
        elif action == "last":
            result = self.last_message()
        elif action == "by_role":
            result = self.messages_by_role(request.get("role"))
        elif action == "clear":
            result = self.clear()
        else:
            raise ValueError(f"Unknown conversation action: {action}")
        return {self.output_key: result}


# ═══════════════════════════════════════════════════════════════════
# Prompt templates
# ═══════════════════════════════════════════════════════════════════

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")


def fill_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace {{ name }} placeholders; unknown names are left untouched."""
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)
    return _PLACEHOLDER.sub(_sub, template)


def prompt_template(
    template: str,
    output_key: str = "prompt",
    variables: Mapping[str, Any] | None = None,
    name: str = "prompt_template",
) -> Task:
    """Task filling `template` from state (fixed `variables` take precedence)."""
    fixed = dict(variables or {})

    def _fill(state: dict[str, Any]) -> dict[str, Any]:
        return {output_key: fill_template(template, {**state, **fixed})}

    return Task(
        name=name,
        description="Fill a template with variables",
        fn=_fill,
        output=[param(output_key, ParamType.STRING, "The filled template")],
    )


# ═══════════════════════════════════════════════════════════════════
# JSON extraction
# ═══════════════════════════════════════════════════════════════════

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def extract_json(text: str, fallback: Any = None) -> Any:
    """
    Parse JSON from text: the whole string, a ```json fenced block, or
    the outermost {...} span. Returns a copy of `fallback` if none parse.
    """
    candidates = [text.strip()]
    fenced = _FENCED.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue

    logger.debug("No JSON found in %d chars of text; using fallback", len(text))
    return copy.deepcopy(fallback)


def json_parser(
    input_key: str = "text",
    output_key: str = "parsed",
    fallback: Any = None,
    name: str = "json_parser",
) -> Task:
    default = {} if fallback is None else fallback

    def _parse(state: dict[str, Any]) -> dict[str, Any]:
        return {output_key: extract_json(str(state.get(input_key) or ""), default)}

    return Task(
        name=name,
        description="Extract and parse JSON from text, with fallback for errors",
        fn=_parse,
        input=[param(input_key, ParamType.STRING, "Text containing JSON")],
        output=[param(output_key, ParamType.OBJECT, "Parsed JSON or the fallback value")],
    )


# ═══════════════════════════════════════════════════════════════════
# Text chunking
# ═══════════════════════════════════════════════════════════════════

BOUNDARY_WINDOW = 100


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 200) -> list[str]:
    """
    Split text into chunks of about `max_chunk_size` characters, each
    starting `overlap` characters before the previous one ended. Chunk
    ends snap to a nearby sentence end or newline when one is within
    BOUNDARY_WINDOW characters.
    """
    if max_chunk_size < 1:
        raise ValueError("max_chunk_size must be >= 1")
    if not 0 <= overlap < max_chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than max_chunk_size")
    if not text or len(text) <= max_chunk_size:
        return [text]

    chunks = []
    position = 0
    while position < len(text):
        chunk_end = min(position + max_chunk_size, len(text))

        if chunk_end < len(text):
            search_from = max(position + 1, chunk_end - BOUNDARY_WINDOW)
            next_period = text.find(".", search_from)
            next_newline = text.find("\n", search_from)
            if next_period != -1 and next_period < chunk_end + BOUNDARY_WINDOW:
                chunk_end = next_period + 1
            elif next_newline != -1 and next_newline < chunk_end + BOUNDARY_WINDOW:
                chunk_end = next_newline + 1

        chunks.append(text[position:chunk_end])
        if chunk_end >= len(text):
            break
        position = max(chunk_end - overlap, position + 1)

    return chunks


def text_chunker(
    input_key: str = "text",
    output_key: str = "chunks",
    max_chunk_size: int = 1000,
    overlap: int = 200,
    name: str = "text_chunker",
) -> Task:
    def _chunk(state: dict[str, Any]) -> dict[str, Any]:
        return {output_key: chunk_text(state.get(input_key) or "", max_chunk_size, overlap)}

    return Task(
        name=name,
        description="Split text into overlapping chunks for processing",
        fn=_chunk,
        input=[param(input_key, ParamType.STRING, "Text to split")],
        output=[param(output_key, ParamType.ARRAY, "Text chunks with overlap")],
    )


# ═══════════════════════════════════════════════════════════════════
# Snapshots
# ═══════════════════════════════════════════════════════════════════

def state_snapshot(output_key: str = "snapshot", name: str = "state_snapshot") -> Task:
    """Task storing a deep copy of the state (minus earlier snapshots) under `output_key`."""
    def _snapshot(state: dict[str, Any]) -> dict[str, Any]:
        return {output_key: copy.deepcopy({k: v for k, v in state.items() if k != output_key})}

    return Task(
        name=name,
        description="Create a deep copy snapshot of the current state",
        fn=_snapshot,
        output=[param(output_key, ParamType.OBJECT, "A deep copy of the state")],
    )
