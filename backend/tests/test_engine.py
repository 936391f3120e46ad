"""Tests for the workflow graph walker."""

import asyncio

import pytest

from core.plugin_system import HOOK_STEP_COMPLETED, HOOK_STEP_FAILED, HOOK_WORKFLOW_COMPLETED, register_hook
from handlers.base import BaseHandler
from workflow.engine import ExecutionStatus, StepStatus, WorkflowEngine


class IncrementHandler(BaseHandler):
    """Adds 1 to ``variables[config.variable]``."""

    step_type = "increment"

    async def execute(self, step, context):
        name = step.config.get("variable", "count")
        context.set_variable(name, context.get_variable(name, 0) + 1)
        return context.get_variable(name)


def workflow(steps, edges):
    return {
        "steps": [
            {"id": s[0], "type": s[1], "config": s[2] if len(s) > 2 else {}}
            for s in steps
        ],
        "edges": [
            {"source": e[0], "target": e[1], **({"sourceHandle": e[2]} if len(e) > 2 else {})}
            for e in edges
        ],
    }


@pytest.fixture
def engine(registry):
    registry.register("increment", IncrementHandler)
    return WorkflowEngine(handler_registry=registry)


def _trace_ids(report):
    return [entry[0] for entry in report.data.get("trace", [])]


# ─── sequential / fan-out ───

@pytest.mark.unit
class TestSequencing:
    @pytest.mark.asyncio
    async def test_linear_order(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("a", "record"), ("b", "record"), ("c", "record")],
            [("start", "a"), ("a", "b"), ("b", "c")],
        ))
        assert report.status == ExecutionStatus.COMPLETED
        assert _trace_ids(report) == ["a", "b", "c"]
        assert all(r.status == StepStatus.COMPLETED for r in report.steps.values())
        assert report.steps["a"].output == "a"
        assert report.error is None

    @pytest.mark.asyncio
    async def test_fan_out_runs_concurrently(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("left", "slow", {"sleep": 80}), ("right", "slow", {"sleep": 80})],
            [("start", "left"), ("start", "right")],
        ))
        trace = _trace_ids(report)
        assert report.status == ExecutionStatus.COMPLETED
        # Both branches started before either finished
        assert set(trace[:2]) == {"left:start", "right:start"}
        assert set(trace[2:]) == {"left:end", "right:end"}

    @pytest.mark.asyncio
    async def test_initial_data_and_variables(self, engine):
        report = await engine.execute(
            workflow([("start", "start"), ("log", "log", {"message": "${data.user} #${variables.n}"})],
                     [("start", "log")]),
            data={"user": "ada"},
            variables={"n": 7},
            workflow_id="wf-1",
        )
        assert report.steps["log"].output == "ada #7"
        assert report.workflow_id == "wf-1"
        assert report.variables == {"n": 7}


# ─── failure handling ───

@pytest.mark.unit
class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_skips_descendants_only(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("bad", "fail"), ("after_bad", "record"), ("sibling", "record")],
            [("start", "bad"), ("bad", "after_bad"), ("start", "sibling")],
        ))
        assert report.status == ExecutionStatus.FAILED
        assert report.steps["bad"].status == StepStatus.FAILED
        assert report.steps["bad"].error == "bad failed"
        assert report.steps["after_bad"].status == StepStatus.SKIPPED
        assert report.steps["sibling"].status == StepStatus.COMPLETED
        assert report.error == "Steps failed: bad"
        assert report.failed_steps() == ["bad"]

    @pytest.mark.asyncio
    async def test_fail_silently_continues(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("flaky", "fail", {"failSilently": True}), ("next", "record")],
            [("start", "flaky"), ("flaky", "next")],
        ))
        assert report.status == ExecutionStatus.COMPLETED
        assert report.steps["flaky"].status == StepStatus.SUPPRESSED
        assert report.steps["next"].status == StepStatus.COMPLETED
        assert report.warnings == ['Step "flaky" (fail) failed silently']

    @pytest.mark.asyncio
    async def test_retry_counts_attempts(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("bad", "fail", {"retryEnabled": True, "retryCount": 2, "retryDelay": 1})],
            [("start", "bad")],
        ))
        assert report.steps["bad"].attempts == 3
        assert _trace_ids(report).count("bad") == 3

    @pytest.mark.asyncio
    async def test_unknown_step_type(self, engine):
        report = await engine.execute(workflow(
            [("start", "start"), ("x", "teleport"), ("y", "record")],
            [("start", "x"), ("x", "y")],
        ))
        assert report.steps["x"].status == StepStatus.FAILED
        assert report.steps["x"].error_type == "NotFoundError"
        assert report.steps["y"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_invalid_graph(self, engine):
        report = await engine.execute({"steps": []})
        assert report.status == ExecutionStatus.FAILED
        assert report.error == "Workflow has no steps"

    @pytest.mark.asyncio
    async def test_unreachable_steps_are_skipped(self, engine):
        report = await engine.execute({
            "steps": [{"id": "start", "type": "start"}, {"id": "island", "type": "record"}],
            "edges": [],
        })
        assert report.status == ExecutionStatus.COMPLETED
        assert report.steps["island"].status == StepStatus.SKIPPED


# ─── switch ───

@pytest.mark.unit
class TestSwitch:
    CASES = [
        {"id": "ready", "condition": {"type": "variable", "variableName": "status", "comparisonValue": "ready"}},
        {"id": "failed", "condition": {"type": "variable", "variableName": "status", "comparisonValue": "failed"}},
    ]

    def _workflow(self):
        return workflow(
            [("start", "start"), ("route", "switch", {"cases": self.CASES}),
             ("on_ready", "record"), ("on_failed", "record"), ("fallback", "record"), ("after_ready", "record")],
            [("start", "route"), ("route", "on_ready", "ready"), ("route", "on_failed", "failed"),
             ("route", "fallback", "default"), ("on_ready", "after_ready")],
        )

    @pytest.mark.asyncio
    async def test_matching_case(self, engine):
        report = await engine.execute(self._workflow(), variables={"status": "ready"})
        assert _trace_ids(report) == ["on_ready", "after_ready"]
        assert report.steps["on_failed"].status == StepStatus.SKIPPED
        assert report.steps["fallback"].status == StepStatus.SKIPPED
        assert report.data["switchOutput"] == "ready"

    @pytest.mark.asyncio
    async def test_default_case(self, engine):
        report = await engine.execute(self._workflow(), variables={"status": "weird"})
        assert _trace_ids(report) == ["fallback"]
        assert report.steps["after_ready"].status == StepStatus.SKIPPED


# ─── loops ───

@pytest.mark.unit
class TestLoops:
    @pytest.mark.asyncio
    async def test_for_each(self, engine):
        report = await engine.execute(
            workflow(
                [("start", "start"), ("each", "loop", {"mode": "forEach", "arrayVariable": "items"}),
                 ("body", "record"), ("done", "record")],
                [("start", "each"), ("each", "body", "output"), ("each", "done", "done")],
            ),
            data={"items": [10, 20, 30]},
        )
        body_trace = [entry for entry in report.data["trace"] if entry[0] == "body"]
        assert body_trace == [("body", 0, 10), ("body", 1, 20), ("body", 2, 30)]
        assert report.steps["body"].runs == 3
        assert report.steps["each"].output["iterations"] == 3
        # The done edge runs once, after the last pass
        assert _trace_ids(report)[-1] == "done"
        assert report.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_for_each_empty_array(self, engine):
        report = await engine.execute(
            workflow(
                [("start", "start"), ("each", "loop", {"mode": "forEach", "arrayVariable": "items"}),
                 ("body", "record"), ("done", "record")],
                [("start", "each"), ("each", "body"), ("each", "done", "done")],
            ),
            data={"items": []},
        )
        assert report.steps["body"].status == StepStatus.SKIPPED
        assert report.steps["done"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_do_while(self, engine):
        condition = {"type": "variable", "variableName": "count",
                     "comparisonOperator": "lessThan", "comparisonValue": 3}
        report = await engine.execute(
            workflow(
                [("start", "start"), ("again", "loop", {"mode": "doWhile", "condition": condition}),
                 ("bump", "increment"), ("done", "record")],
                [("start", "again"), ("again", "bump", "body"), ("again", "done", "done")],
            ),
            variables={"count": 0},
        )
        assert report.variables["count"] == 3
        assert report.steps["bump"].runs == 3
        assert report.steps["done"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_do_while_max_iterations(self, engine):
        condition = {"type": "variable", "variableName": "count",
                     "comparisonOperator": "greaterThan", "comparisonValue": -1}
        report = await engine.execute(
            workflow(
                [("start", "start"),
                 ("forever", "loop", {"mode": "doWhile", "condition": condition, "maxIterations": 3}),
                 ("bump", "increment"), ("done", "record")],
                [("start", "forever"), ("forever", "bump"), ("forever", "done", "done")],
            ),
            variables={"count": 0},
        )
        assert report.status == ExecutionStatus.FAILED
        assert report.steps["forever"].status == StepStatus.FAILED
        assert "maxIterations" in report.steps["forever"].error
        assert report.steps["bump"].runs == 3
        assert report.steps["done"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_body_failure_stops_loop(self, engine):
        report = await engine.execute(
            workflow(
                [("start", "start"), ("each", "loop", {"mode": "forEach", "arrayVariable": "items"}),
                 ("bad", "fail"), ("done", "record")],
                [("start", "each"), ("each", "bad"), ("each", "done", "done")],
            ),
            data={"items": [1, 2, 3]},
        )
        assert report.steps["bad"].runs == 1
        assert report.steps["each"].status == StepStatus.FAILED
        assert report.steps["done"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_concurrent_loops_keep_their_own_arrays(self, engine):
        async def yield_after_step(**kwargs):
            # Let the sibling branch run its loop step before this one starts iterating
            await asyncio.sleep(0)

        register_hook(HOOK_STEP_COMPLETED, yield_after_step)
        report = await engine.execute(
            workflow(
                [("start", "start"),
                 ("loop_a", "loop", {"mode": "forEach", "arrayVariable": "items_a"}),
                 ("loop_b", "loop", {"mode": "forEach", "arrayVariable": "items_b"}),
                 ("body_a", "record"), ("body_b", "record")],
                [("start", "loop_a"), ("start", "loop_b"),
                 ("loop_a", "body_a", "output"), ("loop_b", "body_b", "output")],
            ),
            data={"items_a": [1, 2], "items_b": [100, 200, 300]},
        )
        assert report.status == ExecutionStatus.COMPLETED
        assert report.steps["loop_a"].output == {"mode": "forEach", "length": 2, "iterations": 2}
        assert report.steps["loop_b"].output == {"mode": "forEach", "length": 3, "iterations": 3}
        assert report.steps["body_a"].runs == 2
        assert report.steps["body_b"].runs == 3
        assert _trace_ids(report).count("body_a") == 2
        assert _trace_ids(report).count("body_b") == 3

    @pytest.mark.asyncio
    async def test_concurrent_do_while_loops(self, engine):
        async def yield_after_step(**kwargs):
            await asyncio.sleep(0)

        def below(name, limit):
            return {"type": "variable", "variableName": name,
                    "comparisonOperator": "lessThan", "comparisonValue": limit}

        register_hook(HOOK_STEP_COMPLETED, yield_after_step)
        report = await engine.execute(
            workflow(
                [("start", "start"),
                 ("loop_a", "loop", {"mode": "doWhile", "condition": below("a", 2)}),
                 ("loop_b", "loop", {"mode": "doWhile", "condition": below("b", 4)}),
                 ("bump_a", "increment", {"variable": "a"}), ("bump_b", "increment", {"variable": "b"})],
                [("start", "loop_a"), ("start", "loop_b"),
                 ("loop_a", "bump_a", "output"), ("loop_b", "bump_b", "output")],
            ),
            variables={"a": 0, "b": 0},
        )
        assert report.status == ExecutionStatus.COMPLETED
        assert report.variables["a"] == 2
        assert report.variables["b"] == 4
        assert report.steps["bump_a"].runs == 2
        assert report.steps["bump_b"].runs == 4

    @pytest.mark.asyncio
    async def test_nested_loops(self, engine):
        report = await engine.execute(
            workflow(
                [("start", "start"),
                 ("rows", "loop", {"mode": "forEach", "arrayVariable": "rows"}),
                 ("cols", "loop", {"mode": "forEach", "arrayVariable": "cols"}),
                 ("cell", "record"), ("after", "record")],
                [("start", "rows"), ("rows", "cols", "output"), ("cols", "cell", "output"),
                 ("rows", "after", "done")],
            ),
            data={"rows": [1, 2], "cols": ["a", "b", "c"]},
        )
        assert report.status == ExecutionStatus.COMPLETED
        cells = [entry for entry in report.data["trace"] if entry[0] == "cell"]
        assert [item for _, _, item in cells] == ["a", "b", "c", "a", "b", "c"]
        assert [index for _, index, _ in cells] == [0, 1, 2, 0, 1, 2]
        assert report.steps["cols"].runs == 2
        assert report.steps["cell"].runs == 6
        assert report.steps["rows"].output["iterations"] == 2
        assert report.steps["cols"].output["iterations"] == 3
        assert _trace_ids(report)[-1] == "after"


# ─── cancellation / hooks / cleanup ───

@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel(self, engine):
        task = asyncio.create_task(engine.execute(
            workflow(
                [("start", "start"), ("wait", "slow", {"sleep": 100}), ("never", "record")],
                [("start", "wait"), ("wait", "never")],
            ),
            execution_id="run-1",
        ))
        await asyncio.sleep(0.03)
        assert "run-1" in engine.get_running_executions()
        assert await engine.cancel_execution("run-1") is True

        report = await task
        assert report.status == ExecutionStatus.CANCELLED
        # In-flight step finishes, nothing new is scheduled
        assert report.steps["wait"].status == StepStatus.COMPLETED
        assert report.steps["never"].status == StepStatus.CANCELLED
        assert await engine.cancel_execution("run-1") is False
        assert engine.get_report("run-1") is None

    @pytest.mark.asyncio
    async def test_hooks(self, engine):
        events = []
        register_hook(HOOK_STEP_COMPLETED, lambda **kw: events.append(("done", kw["step_id"])))
        register_hook(HOOK_STEP_FAILED, lambda **kw: events.append(("failed", kw["step_id"])))

        async def on_finish(**kw):
            events.append(("workflow", kw["report"].status.value))

        register_hook(HOOK_WORKFLOW_COMPLETED, on_finish)

        await engine.execute(workflow([("start", "start"), ("a", "record")], [("start", "a")]))
        assert events == [("done", "start"), ("done", "a"), ("workflow", "completed")]

    @pytest.mark.asyncio
    async def test_broken_hook_does_not_fail_run(self, engine):
        def explode(**kw):
            raise RuntimeError("hook bug")

        register_hook(HOOK_STEP_COMPLETED, explode)
        report = await engine.execute(workflow([("start", "start"), ("a", "record")], [("start", "a")]))
        assert report.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_connections_closed_after_run(self, engine, context):
        report = await engine.execute(
            workflow(
                [("start", "start"), ("connect", "dbConnect", {"dbType": "sqlite"}),
                 ("query", "dbQuery", {"query": "SELECT 1 AS one"})],
                [("start", "connect"), ("connect", "query")],
            ),
            context=context,
        )
        assert report.status == ExecutionStatus.COMPLETED
        assert report.data["dbResult"]["rows"] == [{"one": 1}]
        assert context.connections == {}

    @pytest.mark.asyncio
    async def test_report_serialization(self, engine):
        report = await engine.execute(workflow([("start", "start")], []))
        payload = report.to_dict(include_state=False)
        assert payload["status"] == "completed"
        assert payload["steps"]["start"]["status"] == "completed"
        assert "data" not in payload
