"""
taskweave — Async Task Orchestration

Compose async units of work into pipelines, branches, switches, fan-out
groups and jump-navigated graphs over a shared, progressively merged
state dict.

Core imports (always loaded):
  - taskweave.task: Task, create_task, param, credential
  - taskweave.state: Jump, Outcome, goto
  - taskweave.combinators: sequence, branch, switch_on, recover, jump_to, jump_if
  - taskweave.flow: Flow, Node, parallel, map_reduce
  - taskweave.segments: SegmentRegistry
  - taskweave.retry / rate_limit / timeout: resilience wrappers
  - taskweave.errors: error hierarchy

Lazily loaded on first use:
  - taskweave.tools: MemoryStore, prompt_template, json_parser,
    text_chunker, state_snapshot
"""

from taskweave.errors import (
    TaskweaveError, TaskExecutionError, MaxInvocationsExceeded, TaskTimeout,
    ValidationFailed, StepBudgetExceeded, SegmentNotFound,
)
from taskweave.state import GOTO_KEY, Jump, Outcome, goto, is_jump, merge
from taskweave.task import (
    ParamType, Param, Credential, TaskMetadata, TaskStats, Task,
    param, credential, create_task, as_task,
)
from taskweave.combinators import sequence, branch, switch_on, recover, jump_to, jump_if
from taskweave.flow import Flow, Node, ParallelTask, MapReduceTask, parallel, map_reduce
from taskweave.segments import SegmentRegistry
from taskweave.retry import RetryPolicy, RetryingTask, with_retry, get_retry_policy, is_transient_error
from taskweave.rate_limit import (
    RateLimitConfig, ProviderRateLimiter, RateLimitedTask, with_rate_limit,
    get_rate_limiter, reset_all_limiters, estimate_tokens,
)
from taskweave.timeout import TimeoutTask, with_timeout

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy-load the built-in state tools."""
    _tool_symbols = {
        "MemoryStore", "ConversationMemory", "prompt_template", "json_parser", "text_chunker",
        "state_snapshot", "fill_template", "extract_json", "chunk_text",
    }
    if name in _tool_symbols:
        import taskweave.tools as _tools
        return getattr(_tools, name)

    raise AttributeError(f"module 'taskweave' has no attribute {name!r}")
