"""Tests for the in-memory execution manager."""

import asyncio

import pytest

from core.exceptions import CapacityError, NotFoundError
from workflow.engine import ExecutionStatus, StepStatus, WorkflowEngine
from workflow.execution_manager import ExecutionManager
from workflow.graph import WorkflowGraph


def slow_graph(sleep_ms: int = 200) -> WorkflowGraph:
    return WorkflowGraph.from_dict({
        "steps": [
            {"id": "start", "type": "start"},
            {"id": "nap", "type": "slow", "config": {"sleep": sleep_ms}},
            {"id": "after", "type": "record"},
        ],
        "edges": [
            {"source": "start", "target": "nap"},
            {"source": "nap", "target": "after"},
        ],
    })


@pytest.fixture
def manager(registry) -> ExecutionManager:
    return ExecutionManager(engine=WorkflowEngine(handler_registry=registry), max_concurrent=2, history_limit=3)


@pytest.mark.unit
class TestExecutionManager:
    @pytest.mark.asyncio
    async def test_start_and_wait(self, manager):
        report = manager.start(slow_graph(10), workflow_id="wf-1", data={"seed": 1})
        assert manager.running_count == 1

        final = await manager.wait(report.execution_id, timeout=5)
        assert final is report
        assert final.status == ExecutionStatus.COMPLETED
        assert final.data["seed"] == 1
        assert manager.running_count == 0

    @pytest.mark.asyncio
    async def test_capacity(self, manager):
        first = manager.start(slow_graph())
        second = manager.start(slow_graph())
        with pytest.raises(CapacityError) as exc_info:
            manager.start(slow_graph())
        assert exc_info.value.status_code == 429

        await manager.wait(first.execution_id, timeout=5)
        await manager.wait(second.execution_id, timeout=5)
        manager.start(slow_graph(1))

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, manager):
        first = manager.start(slow_graph(1))
        await manager.wait(first.execution_id, timeout=5)
        second = manager.start(slow_graph(1))
        await manager.wait(second.execution_id, timeout=5)

        ids = [r.execution_id for r in manager.list_executions()]
        assert ids == [second.execution_id, first.execution_id]
        assert manager.list_executions(ExecutionStatus.FAILED) == []

    @pytest.mark.asyncio
    async def test_history_limit(self, manager):
        ids = []
        for _ in range(5):
            report = manager.start(slow_graph(1))
            await manager.wait(report.execution_id, timeout=5)
            ids.append(report.execution_id)
        # Pruning happens when the next run is scheduled
        manager.start(slow_graph(1))

        kept = {r.execution_id for r in manager.list_executions()}
        assert ids[0] not in kept
        assert ids[-1] in kept

    @pytest.mark.asyncio
    async def test_cancel_running(self, manager):
        report = manager.start(slow_graph(150))
        await asyncio.sleep(0.05)

        assert await manager.cancel(report.execution_id) is True
        final = await manager.wait(report.execution_id, timeout=5)
        assert final.status == ExecutionStatus.CANCELLED
        assert final.steps["nap"].status == StepStatus.COMPLETED
        assert final.steps["after"].status == StepStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished(self, manager):
        report = manager.start(slow_graph(1))
        await manager.wait(report.execution_id, timeout=5)
        assert await manager.cancel(report.execution_id) is False

    @pytest.mark.asyncio
    async def test_unknown_execution(self, manager):
        with pytest.raises(NotFoundError):
            manager.get("nope")
        with pytest.raises(NotFoundError):
            await manager.cancel("nope")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self, manager):
        report = manager.start(slow_graph(5000))
        await asyncio.sleep(0.02)
        await manager.shutdown()
        assert manager.running_count == 0
        assert report.status == ExecutionStatus.CANCELLED
