"""Execution Manager: in-memory bookkeeping for background runs.

The ExecutionManager is a singleton that:
1. Starts workflow runs as background asyncio tasks
2. Enforces MAX_CONCURRENT_EXECUTIONS
3. Keeps the reports of running and recently finished runs
4. Flags runs as cancelled on request
"""

import asyncio
import uuid
from collections import OrderedDict
from typing import Optional

import structlog

from app.config import get_settings
from core.exceptions import CapacityError, NotFoundError
from workflow.engine import ExecutionReport, ExecutionStatus, WorkflowEngine, get_workflow_engine
from workflow.graph import WorkflowGraph

logger = structlog.get_logger(__name__)


class ExecutionManager:
    """Tracks runs started through the API.

    Singleton pattern, use get_execution_manager() to access.
    """

    def __init__(
        self,
        engine: Optional[WorkflowEngine] = None,
        max_concurrent: Optional[int] = None,
        history_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.engine = engine or get_workflow_engine()
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_EXECUTIONS
        self.history_limit = history_limit or settings.EXECUTION_HISTORY_LIMIT
        self._reports: "OrderedDict[str, ExecutionReport]" = OrderedDict()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def start(
        self,
        graph: WorkflowGraph,
        workflow_id: Optional[str] = None,
        data: Optional[dict] = None,
        variables: Optional[dict] = None,
    ) -> ExecutionReport:
        """Schedule a run on the current event loop and return its live report.

        Raises:
            CapacityError: if MAX_CONCURRENT_EXECUTIONS runs are in flight
        """
        if self.running_count >= self.max_concurrent:
            raise CapacityError(self.max_concurrent)

        report = ExecutionReport(execution_id=str(uuid.uuid4()), workflow_id=workflow_id)
        self._reports[report.execution_id] = report
        task = asyncio.create_task(
            self.engine.execute(graph, data=data, variables=variables, report=report),
            name=f"execution-{report.execution_id}",
        )
        self._tasks[report.execution_id] = task
        task.add_done_callback(lambda t, eid=report.execution_id: self._on_done(eid, t))

        logger.info("Execution scheduled", execution_id=report.execution_id, workflow_id=workflow_id)
        self._prune()
        return report

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if task.cancelled():
            report = self._reports.get(execution_id)
            if report is not None and not report.finished:
                report.status = ExecutionStatus.CANCELLED
            return
        error = task.exception()
        if error is not None:
            logger.error("Execution task crashed", execution_id=execution_id, error=str(error))
            report = self._reports.get(execution_id)
            if report is not None:
                report.status = ExecutionStatus.FAILED
                report.error = report.error or str(error)

    def _prune(self) -> None:
        """Drop the oldest finished reports beyond the history limit."""
        finished = [eid for eid, r in self._reports.items() if eid not in self._tasks and r.finished]
        for execution_id in finished[: max(0, len(finished) - self.history_limit)]:
            del self._reports[execution_id]

    def get(self, execution_id: str) -> ExecutionReport:
        report = self._reports.get(execution_id)
        if report is None:
            raise NotFoundError(f'Execution "{execution_id}" not found')
        return report

    def list_executions(self, status: Optional[ExecutionStatus] = None) -> list[ExecutionReport]:
        """Most recent first."""
        reports = reversed(list(self._reports.values()))
        return [r for r in reports if status is None or r.status == status]

    async def cancel(self, execution_id: str) -> bool:
        """Stop scheduling further steps of a run. False when it already finished."""
        report = self.get(execution_id)
        if await self.engine.cancel_execution(execution_id):
            return True
        if report.finished:
            return False
        # Scheduled but not started yet
        report.metadata["cancelled"] = True
        return True

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionReport:
        """Wait until a run finishes and return its report."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get(execution_id)

    async def shutdown(self) -> None:
        """Cancel in-flight runs (application shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Execution manager stopped", cancelled=len(tasks))


# Singleton
_manager: Optional[ExecutionManager] = None


def get_execution_manager() -> ExecutionManager:
    """Get or create the singleton execution manager."""
    global _manager
    if _manager is None:
        _manager = ExecutionManager()
    return _manager
