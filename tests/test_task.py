"""
taskweave — Task Tests

Tests:
  - Merge law for overlapping and disjoint keys
  - Result normalization (None, mappings, _goto mappings, scalars)
  - Statistics accuracy after successes and caught failures
  - Errors propagate unchanged
  - Invocation ceiling
  - Input validation, credentials, metadata builders
  - Coercion of callables, jumps and goto mappings
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from taskweave.errors import MaxInvocationsExceeded, TaskExecutionError, ValidationFailed
from taskweave.state import Jump, Outcome, goto, merge
from taskweave.task import ParamType, Task, as_task, create_task, param


class Boom(Exception):
    pass


class TestMergeLaw(unittest.IsolatedAsyncioTestCase):

    async def test_overlapping_keys_take_delta_value(self):
        task = create_task(lambda s: {"b": 2, "c": 3}, name="t")
        state = {"a": 1, "b": 0}
        delta = await task.call(state)
        self.assertEqual(merge(state, delta), {"a": 1, "b": 2, "c": 3})

    async def test_disjoint_keys_preserved(self):
        task = create_task(lambda s: {"z": 9}, name="t")
        state = {"a": 1, "b": 2}
        self.assertEqual(merge(state, await task.call(state)), {"a": 1, "b": 2, "z": 9})

    async def test_merge_is_shallow(self):
        task = create_task(lambda s: {"nested": {"y": 2}}, name="t")
        state = {"nested": {"x": 1}}
        self.assertEqual(merge(state, await task.call(state)), {"nested": {"y": 2}})

    async def test_task_gets_a_copy_of_state(self):
        def mutate(state):
            state["leak"] = True
            return {}
        state = {"a": 1}
        await create_task(mutate).call(state)
        self.assertEqual(state, {"a": 1})


class TestNormalization(unittest.IsolatedAsyncioTestCase):

    async def test_none_is_empty_delta(self):
        self.assertEqual(await create_task(lambda s: None).call({}), {})

    async def test_async_function(self):
        async def fn(state):
            return {"n": state["n"] + 1}
        self.assertEqual(await create_task(fn).call({"n": 1}), {"n": 2})

    async def test_goto_mapping_becomes_jump(self):
        result = await create_task(lambda s: {"_goto": "review", "draft": "x"}).call({})
        self.assertEqual(result, Jump("review", {"draft": "x"}))

    async def test_jump_passes_through(self):
        result = await create_task(lambda s: goto("next", a=1)).call({})
        self.assertIsInstance(result, Jump)
        self.assertEqual(result.target, "next")
        self.assertEqual(result.delta, {"a": 1})

    async def test_scalar_becomes_outcome(self):
        result = await create_task(lambda s: "approved").call({})
        self.assertEqual(result, Outcome("approved"))


class TestStatistics(unittest.IsolatedAsyncioTestCase):

    async def test_calls_and_errors(self):
        fail = {"on": False}

        def fn(state):
            if fail["on"]:
                raise Boom("nope")
            return {}

        task = create_task(fn, name="flaky")
        k, e = 4, 3
        for _ in range(k):
            await task.call({})
        fail["on"] = True
        for _ in range(e):
            with self.assertRaises(Boom):
                await task.call({})

        self.assertEqual(task.stats.calls, k + e)
        self.assertEqual(task.stats.errors, e)
        stats = task.get_stats()
        self.assertAlmostEqual(stats["error_rate"], e / (k + e))
        self.assertGreaterEqual(stats["total_time"], 0.0)

    async def test_reset_stats(self):
        task = create_task(lambda s: {})
        await task.call({})
        task.reset_stats()
        self.assertEqual(task.get_stats()["calls"], 0)
        self.assertEqual(task.get_stats()["avg_time"], 0.0)


class TestErrors(unittest.IsolatedAsyncioTestCase):

    async def test_error_propagates_unchanged(self):
        err = Boom("original")

        def fn(state):
            raise err

        with self.assertRaises(Boom) as ctx:
            await create_task(fn).call({})
        self.assertIs(ctx.exception, err)

    async def test_no_execution_function(self):
        with self.assertRaises(TaskExecutionError):
            await Task(name="empty").call({})

    async def test_with_execute_only_once(self):
        task = Task(name="t").with_execute(lambda s: {"ok": True})
        self.assertEqual(await task.call({}), {"ok": True})
        with self.assertRaises(ValueError):
            task.with_execute(lambda s: {})


class TestMaxInvocations(unittest.IsolatedAsyncioTestCase):

    async def test_ceiling_blocks_before_execution(self):
        runs = []
        task = create_task(lambda s: runs.append(1), name="limited", max_invocations=2)
        await task.call({})
        await task.call({})
        with self.assertRaises(MaxInvocationsExceeded) as ctx:
            await task.call({})
        self.assertEqual(len(runs), 2)
        self.assertEqual(task.stats.calls, 2)
        self.assertEqual(ctx.exception.limit, 2)
        self.assertIsInstance(ctx.exception, TaskExecutionError)

    async def test_reset_restores_budget(self):
        task = create_task(lambda s: {}, max_invocations=1)
        await task.call({})
        task.reset_stats()
        await task.call({})


class TestValidationAndMetadata(unittest.IsolatedAsyncioTestCase):

    async def test_missing_required_input(self):
        task = create_task(
            lambda s: {},
            name="needs_text",
            input=[param("text", ParamType.STRING), param("lang", optional=True)],
            validate_inputs=True,
        )
        with self.assertRaises(ValidationFailed) as ctx:
            await task.call({"lang": "en"})
        self.assertEqual(ctx.exception.detail["missing"], ["text"])
        self.assertEqual(task.stats.errors, 1)
        self.assertEqual(await task.call({"text": "hi"}), {})

    def test_builders_replace_metadata(self):
        task = create_task(lambda s: {}, name="t")
        before = task.metadata
        task.with_tag("io").with_example({"q": 1}, {"a": 2}).with_credential("API_KEY", "key")
        self.assertEqual(before.tags, ())
        self.assertEqual(task.metadata.tags, ("io",))
        self.assertEqual(task.metadata.examples[0]["output"], {"a": 2})
        self.assertEqual(task.metadata.required_credentials[0].name, "API_KEY")

    def test_missing_credentials(self):
        task = create_task(lambda s: {}).with_credential("A_KEY").with_credential("B_KEY", required=False)
        self.assertEqual(task.missing_credentials({}), ["A_KEY"])
        self.assertEqual(task.missing_credentials({"A_KEY": "x"}), [])

    def test_create_task_uses_docstring(self):
        def summarize(state):
            """Summarize the document.

            Longer text.
            """
            return {}
        task = create_task(summarize)
        self.assertEqual(task.name, "summarize")
        self.assertEqual(task.metadata.description, "Summarize the document.")

    def test_param_accepts_string_type(self):
        self.assertEqual(param("n", "number").type, ParamType.NUMBER)


class TestCoercion(unittest.IsolatedAsyncioTestCase):

    async def test_as_task_variants(self):
        t = create_task(lambda s: {})
        self.assertIs(as_task(t), t)
        self.assertEqual(await as_task(lambda s: {"x": 1}).call({}), {"x": 1})
        self.assertEqual(await as_task(goto("a")).call({}), Jump("a"))
        self.assertEqual(await as_task({"_goto": "b", "k": 1}).call({}), Jump("b", {"k": 1}))

    def test_as_task_rejects_other_values(self):
        with self.assertRaises(TypeError):
            as_task(42)

    async def test_as_function_carries_metadata(self):
        task = create_task(lambda s: {"y": 1}, name="fn_task")
        fn = task.as_function()
        self.assertEqual(fn.metadata.name, "fn_task")
        self.assertEqual(await fn({}), {"y": 1})


if __name__ == "__main__":
    unittest.main()
