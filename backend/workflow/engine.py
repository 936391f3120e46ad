"""Workflow Execution Engine: graph walker.

Takes a workflow graph (steps + edges) and runs it from its entry step,
handling:

- Sequential steps and concurrent fan-out branches
- Switch steps (only the selected handle's edges are followed)
- Loops (forEach over a data array, doWhile on a condition)
- Retry, waits and attempt timeouts (applied by each handler's run())
- failSilently steps (reported as warnings, the path continues)
- Failure isolation: a failed step skips its own downstream steps only

Workflow definition::

    {
        "steps": [
            {"id": "start", "type": "start"},
            {"id": "fetch", "type": "apiRequest", "config": {"url": "https://..."}},
            {"id": "each", "type": "loop", "config": {"mode": "forEach", "arrayVariable": "items"}},
            {"id": "log", "type": "log", "config": {"message": "${variables.item}"}},
            {"id": "done", "type": "log", "config": {"message": "finished"}}
        ],
        "edges": [
            {"source": "start", "target": "fetch"},
            {"source": "fetch", "target": "each"},
            {"source": "each", "target": "log", "sourceHandle": "output"},
            {"source": "each", "target": "done", "sourceHandle": "done"}
        ]
    }
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

import structlog

from app.config import get_settings
from core.exceptions import EngineError, OperationError
from core.logging_config import bind_run_context, clear_run_context
from core.plugin_system import (
    HOOK_STEP_COMPLETED,
    HOOK_STEP_FAILED,
    HOOK_STEP_STARTED,
    HOOK_WORKFLOW_COMPLETED,
    HOOK_WORKFLOW_FAILED,
    HOOK_WORKFLOW_STARTED,
    emit_hook,
)
from handlers.base import HandlerResult
from handlers.implementations.logic import (
    LOOP_ARRAY_KEY,
    LOOP_CONDITION_KEY,
    LOOP_MAX_ITERATIONS_KEY,
    LOOP_MODE_KEY,
    LOOP_SHOULD_START_KEY,
    SWITCH_OUTPUT_KEY,
)
from handlers.registry import HandlerRegistry, get_handler_registry
from workflow.conditions import ConditionEvaluator
from workflow.context import RunContext
from workflow.graph import Edge, Step, WorkflowGraph

logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Status ───────────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPPRESSED = "suppressed"  # failed with failSilently, path continued
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    """Status of a whole run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ─── Results ──────────────────────────────────────────────────

@dataclass
class StepResult:
    """Latest result of one step. Loop body steps keep their last pass; ``runs`` counts passes."""
    step_id: str
    step_type: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: float = 0
    attempts: int = 0
    runs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": round(self.duration_ms, 2),
            "attempts": self.attempts,
            "runs": self.runs,
        }


@dataclass
class ExecutionReport:
    """Outcome of one run, updated live while the run is in flight."""

    execution_id: str
    workflow_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    steps: dict[str, StepResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: float = 0
    data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return bool(self.metadata.get("cancelled"))

    @property
    def finished(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)

    def failed_steps(self) -> list[str]:
        return [sid for sid, r in self.steps.items() if r.status == StepStatus.FAILED]

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self.steps.values() if r.status == status)

    def to_dict(self, include_state: bool = True) -> dict[str, Any]:
        payload = {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "steps": {sid: r.to_dict() for sid, r in self.steps.items()},
            "warnings": list(self.warnings),
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": round(self.duration_ms, 2),
        }
        if include_state:
            payload["data"] = self.data
            payload["variables"] = self.variables
        return payload


# ─── Engine ───────────────────────────────────────────────────

class WorkflowEngine:
    """Runs a validated workflow graph against a RunContext.

    Along one path a step never starts before its predecessor settled.
    Fan-out branches run as concurrent coroutines on the same loop, so
    context mutation is serialized by await points. Cancellation is a flag:
    in-flight handlers finish, no further steps are scheduled.
    """

    def __init__(self, handler_registry: Optional[HandlerRegistry] = None):
        self._handler_registry = handler_registry
        self._running_executions: dict[str, ExecutionReport] = {}

    @property
    def handler_registry(self) -> HandlerRegistry:
        if self._handler_registry is None:
            self._handler_registry = get_handler_registry()
        return self._handler_registry

    async def execute(
        self,
        workflow: Union[WorkflowGraph, dict],
        context: Optional[RunContext] = None,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        data: Optional[dict] = None,
        variables: Optional[dict] = None,
        report: Optional[ExecutionReport] = None,
    ) -> ExecutionReport:
        """Run a workflow to completion.

        Args:
            workflow: A WorkflowGraph, or its wire-format dict
            context: Run context to use (a fresh one by default)
            execution_id: Unique ID for this run (generated when omitted)
            workflow_id: ID of the workflow being run, for logs and reports
            data: Initial context data
            variables: Initial context variables
            report: Pre-created report to fill in (lets callers watch a run)

        Returns:
            The final ExecutionReport. Step failures are reported, not raised.
        """
        if report is None:
            report = ExecutionReport(execution_id=execution_id or str(uuid.uuid4()), workflow_id=workflow_id)
        execution_id = report.execution_id
        context = context or RunContext()
        context.data.update(data or {})
        context.variables.update(variables or {})

        report.status = ExecutionStatus.RUNNING
        report.started_at = _now()
        start = time.monotonic()
        self._running_executions[execution_id] = report
        bind_run_context(execution_id, report.workflow_id)

        try:
            graph = workflow if isinstance(workflow, WorkflowGraph) else WorkflowGraph.from_dict(workflow)
            report.steps = {sid: StepResult(step_id=sid, step_type=s.type) for sid, s in graph.steps.items()}

            logger.info("Workflow starting", steps=len(graph.steps), entry=graph.entry)
            await emit_hook(HOOK_WORKFLOW_STARTED, execution_id=execution_id, workflow_id=report.workflow_id)

            await self._run_path(graph, graph.entry, context, report)

        except EngineError as e:
            # Only graph-level problems reach here; step failures are recorded per step
            logger.error("Workflow could not run", error=e.message)
            report.error = e.message
        except asyncio.CancelledError:
            logger.info("Workflow task cancelled")
            report.metadata["cancelled"] = True
            raise
        finally:
            for result in report.steps.values():
                if result.status == StepStatus.PENDING:
                    result.status = StepStatus.CANCELLED if report.cancelled else StepStatus.SKIPPED

            await context.close_all_connections()
            report.data = context.get_all_data()
            report.variables = context.get_all_variables()
            report.status = self._final_status(report)
            report.completed_at = _now()
            report.duration_ms = (time.monotonic() - start) * 1000
            self._running_executions.pop(execution_id, None)

            logger.info(
                "Workflow finished",
                status=report.status.value,
                failed_steps=report.failed_steps(),
                warnings=len(report.warnings),
                duration_ms=round(report.duration_ms, 2),
            )
            hook = HOOK_WORKFLOW_FAILED if report.status == ExecutionStatus.FAILED else HOOK_WORKFLOW_COMPLETED
            await emit_hook(hook, execution_id=execution_id, report=report)
            clear_run_context()

        return report

    @staticmethod
    def _final_status(report: ExecutionReport) -> ExecutionStatus:
        if report.error or report.failed_steps():
            if not report.error:
                report.error = f"Steps failed: {', '.join(report.failed_steps())}"
            return ExecutionStatus.FAILED
        if report.cancelled:
            return ExecutionStatus.CANCELLED
        return ExecutionStatus.COMPLETED

    # ─── walking ───

    async def _run_edges(
        self, graph: WorkflowGraph, edges: Iterable[Edge], context: RunContext, report: ExecutionReport
    ) -> bool:
        """Run each edge's target path; independent branches run concurrently."""
        targets = [e.target for e in edges]
        if not targets:
            return True
        if len(targets) == 1:
            return await self._run_path(graph, targets[0], context, report)
        outcomes = await asyncio.gather(*[self._run_path(graph, t, context, report) for t in targets])
        return all(outcomes)

    async def _run_path(self, graph: WorkflowGraph, step_id: str, context: RunContext, report: ExecutionReport) -> bool:
        """Run one step and everything downstream of it.

        Returns False when this step or anything below it failed.
        """
        step = graph.get_step(step_id)
        if report.cancelled:
            logger.info("Execution cancelled, not starting step", step_id=step_id)
            self._mark(report, [step_id, *graph.descendants(step_id)], StepStatus.CANCELLED)
            return True

        result, routing = await self._run_step(step, context, report)

        if not result.success and not result.suppressed:
            self._mark(report, graph.descendants(step_id), StepStatus.SKIPPED)
            return False

        if routing == "switch":
            selected = None
            if not result.suppressed:
                selected = result.output if isinstance(result.output, str) else context.get_data(SWITCH_OUTPUT_KEY)
            edges = graph.switch_edges(step_id, selected)
            taken = {e.target for e in edges}
            not_taken = [e for e in graph.outgoing(step_id) if e.target not in taken]
            self._mark(report, graph.reachable_from(not_taken), StepStatus.SKIPPED)
            return await self._run_edges(graph, edges, context, report)

        if routing == "loop":
            if result.suppressed:
                self._mark(report, graph.reachable_from(graph.loop_body_edges(step_id)), StepStatus.SKIPPED)
            elif not await self._run_loop(graph, step, result.output, context, report):
                self._mark(report, graph.reachable_from(graph.loop_done_edges(step_id)), StepStatus.SKIPPED)
                return False
            return await self._run_edges(graph, graph.loop_done_edges(step_id), context, report)

        return await self._run_edges(graph, graph.outgoing(step_id), context, report)

    async def _run_step(
        self, step: Step, context: RunContext, report: ExecutionReport
    ) -> tuple[HandlerResult, Optional[str]]:
        """Dispatch and run a single step, recording its StepResult.

        Returns the handler result and the handler's routing kind.
        """
        record = report.steps[step.id]
        record.status = StepStatus.RUNNING
        record.started_at = _now()
        record.runs += 1
        await emit_hook(HOOK_STEP_STARTED, execution_id=report.execution_id, step_id=step.id, step_type=step.type)

        routing = None
        try:
            handler = self.handler_registry.create_instance(step.type)
        except EngineError as e:
            logger.error("No handler for step", step_id=step.id, step_type=step.type, error=e.message)
            result = HandlerResult(success=False, error=e.message, error_type=type(e).__name__)
        else:
            result = await handler.run(step, context)
            routing = handler.routing

        record.output = result.output
        record.error = result.error
        record.error_type = result.error_type
        record.attempts = result.attempts
        record.duration_ms = result.duration_ms
        record.completed_at = _now()

        if result.success:
            record.status = StepStatus.COMPLETED
            await emit_hook(HOOK_STEP_COMPLETED, execution_id=report.execution_id, step_id=step.id, result=record)
        elif result.suppressed:
            record.status = StepStatus.SUPPRESSED
            report.warnings.append(f'Step "{step.id}" ({step.type}) failed silently')
            await emit_hook(HOOK_STEP_COMPLETED, execution_id=report.execution_id, step_id=step.id, result=record)
        else:
            record.status = StepStatus.FAILED
            await emit_hook(HOOK_STEP_FAILED, execution_id=report.execution_id, step_id=step.id, result=record)
        return result, routing

    @staticmethod
    def _loop_state(output: Any, context: RunContext) -> dict[str, Any]:
        """Iteration state returned by the loop handler.

        Handlers that only seed the context keys fall back to reading them here.
        """
        if isinstance(output, dict) and output.get("mode"):
            return output
        return {
            "mode": context.get_data(LOOP_MODE_KEY),
            "items": context.get_data(LOOP_ARRAY_KEY),
            "condition": context.get_data(LOOP_CONDITION_KEY),
            "maxIterations": context.get_data(LOOP_MAX_ITERATIONS_KEY),
            "shouldStart": context.get_data(LOOP_SHOULD_START_KEY),
        }

    async def _run_loop(
        self, graph: WorkflowGraph, step: Step, output: Any, context: RunContext, report: ExecutionReport
    ) -> bool:
        """Repeat the loop body. Marks the loop step failed when a pass fails."""
        state = self._loop_state(output, context)
        mode = state.get("mode")
        body = graph.loop_body_edges(step.id)
        body_ids = graph.reachable_from(body)
        iterations = 0

        try:
            if mode == "forEach":
                items = list(state.get("items") or [])
                for index, item in enumerate(items):
                    if report.cancelled:
                        break
                    context.set_variable("index", index)
                    context.set_variable("item", item)
                    self._reset(report, body_ids)
                    iterations += 1
                    if not await self._run_edges(graph, body, context, report):
                        raise OperationError(f'Loop "{step.id}" body failed at index {index}')
            else:
                condition = state.get("condition")
                max_iterations = state.get("maxIterations") or get_settings().LOOP_MAX_ITERATIONS
                should_continue = bool(state.get("shouldStart"))
                while should_continue and not report.cancelled:
                    if iterations >= max_iterations:
                        raise OperationError(
                            f'Loop "{step.id}" exceeded maxIterations ({max_iterations}) '
                            "while its condition still held"
                        )
                    context.set_variable("index", iterations)
                    self._reset(report, body_ids)
                    iterations += 1
                    if not await self._run_edges(graph, body, context, report):
                        raise OperationError(f'Loop "{step.id}" body failed at iteration {iterations}')
                    should_continue = (await ConditionEvaluator.evaluate(condition, context)).passed

        except EngineError as e:
            logger.error("Loop failed", step_id=step.id, iterations=iterations, error=e.message)
            record = report.steps[step.id]
            record.status = StepStatus.FAILED
            record.error = e.message
            record.error_type = type(e).__name__
            await emit_hook(HOOK_STEP_FAILED, execution_id=report.execution_id, step_id=step.id, result=record)
            return False

        record = report.steps[step.id]
        summary = {k: state[k] for k in ("mode", "length", "shouldStart") if k in state}
        record.output = {**summary, "iterations": iterations}
        logger.info("Loop finished", step_id=step.id, mode=mode, iterations=iterations)
        if iterations == 0:
            self._mark(report, body_ids, StepStatus.SKIPPED)
        return True

    @staticmethod
    def _mark(report: ExecutionReport, step_ids: Iterable[str], status: StepStatus) -> None:
        """Set ``status`` on steps that have not run yet."""
        for sid in step_ids:
            record = report.steps.get(sid)
            if record is not None and record.status == StepStatus.PENDING:
                record.status = status

    @staticmethod
    def _reset(report: ExecutionReport, step_ids: Iterable[str]) -> None:
        """Put loop body steps back to pending before the next pass, so statuses reflect the last pass."""
        for sid in step_ids:
            record = report.steps.get(sid)
            if record is not None:
                record.status = StepStatus.PENDING

    # ─── management ───

    def get_report(self, execution_id: str) -> Optional[ExecutionReport]:
        return self._running_executions.get(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Flag a running execution as cancelled.

        Args:
            execution_id: ID of the execution to cancel

        Returns:
            True if flagged, False if not running
        """
        report = self._running_executions.get(execution_id)
        if report:
            report.metadata["cancelled"] = True
            logger.info("Execution marked for cancellation", execution_id=execution_id)
            return True
        return False

    def get_running_executions(self) -> dict[str, dict]:
        """Get status of all running executions."""
        return {
            eid: {
                "workflow_id": report.workflow_id,
                "running_steps": [sid for sid, r in report.steps.items() if r.status == StepStatus.RUNNING],
                "steps_completed": report.count(StepStatus.COMPLETED),
                "steps_failed": report.count(StepStatus.FAILED),
            }
            for eid, report in self._running_executions.items()
        }


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
