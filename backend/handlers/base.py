"""
Base handler interface for all step types.

Every step type (navigate, apiRequest, dbQuery, loop, ...) inherits from
BaseHandler and implements execute(). The engine never calls execute()
directly: it calls run(), which applies the step's waits, retry policy and
attempt timeout around it.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from app.config import get_settings
from core.exceptions import EngineError, OperationError
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator
from workflow.retry import SILENT_FAILURE, RetryPolicy, execute_with_retry
from workflow.waits import WaitSpec, WaitTiming, execute_waits

logger = structlog.get_logger(__name__)


class HandlerResult:
    """Standardized outcome of one step run."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        suppressed: bool = False,
        attempts: int = 1,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.error_type = error_type
        self.suppressed = suppressed
        self.attempts = attempts
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "suppressed": self.suppressed,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseHandler(ABC):
    """
    Abstract base class for step handlers.

    Subclasses must implement:
    - execute(step, context) -> output
    - step_type (class property)
    - display_name (class property)

    ``routing`` tells the graph walker how to pick successors:
    None (all edges), "switch" (data["switchOutput"]) or "loop".
    """

    step_type: str = "base"
    display_name: str = "Base Handler"
    description: str = "Abstract base handler"
    category: str = "flow"
    routing: Optional[str] = None

    @abstractmethod
    async def execute(self, step: Step, context: RunContext) -> Any:
        """
        Perform the step's action.

        Args:
            step: The step being run (id, type, raw config)
            context: Shared run context

        Returns:
            Any output worth reporting; state for later steps goes into the context.
        """

    def attempt_timeout_ms(self, step: Step, context: RunContext) -> Optional[float]:
        """Upper bound for a single execute() call; None disables it."""
        return VariableInterpolator.interpolate_number(
            step.config.get("timeout"), context, get_settings().DEFAULT_TIMEOUT_MS
        )

    async def _bounded_execute(self, step: Step, context: RunContext) -> Any:
        timeout_ms = self.attempt_timeout_ms(step, context)
        if not timeout_ms:
            return await self.execute(step, context)
        try:
            return await asyncio.wait_for(self.execute(step, context), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise OperationError(
                f'Step "{step.id}" ({step.type}) timed out after {int(timeout_ms)}ms', 504
            )

    async def run(self, step: Step, context: RunContext) -> HandlerResult:
        """
        Run the step with waits, retry, timing and error handling.

        This is the main entry point called by the workflow engine.
        """
        start = time.monotonic()
        attempts = 1

        def _count_retry(attempt: int, error: BaseException, delay_ms: float) -> None:
            nonlocal attempts
            attempts = attempt + 1
            logger.info("Step retry scheduled", step_id=step.id, attempt=attempt, delay_ms=delay_ms)

        async def _attempt() -> Any:
            # Re-read each attempt so waits see values written by earlier attempts
            waits = WaitSpec.from_config(step.config, context, get_settings().DEFAULT_TIMEOUT_MS)
            if waits.timing == WaitTiming.BEFORE:
                await execute_waits(context.get_page(), waits)
            output = await self._bounded_execute(step, context)
            if waits.timing == WaitTiming.AFTER:
                await execute_waits(context.get_page(), waits)
            return output

        try:
            logger.info("Step starting", step_id=step.id, step_type=self.step_type)
            policy = RetryPolicy.from_config(step.config, context)
            output = await execute_with_retry(_attempt, policy, context, on_retry=_count_retry)
            duration_ms = (time.monotonic() - start) * 1000

            if output is SILENT_FAILURE:
                logger.warning(
                    "Step failed silently",
                    step_id=step.id,
                    step_type=self.step_type,
                    duration_ms=round(duration_ms, 2),
                )
                return HandlerResult(
                    success=False,
                    error=f'Step "{step.id}" ({step.type}) failed silently',
                    suppressed=True,
                    attempts=attempts,
                    duration_ms=duration_ms,
                )

            logger.info(
                "Step completed",
                step_id=step.id,
                step_type=self.step_type,
                attempts=attempts,
                duration_ms=round(duration_ms, 2),
            )
            return HandlerResult(success=True, output=output, attempts=attempts, duration_ms=duration_ms)

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            message = e.message if isinstance(e, EngineError) else str(e) or type(e).__name__
            logger.error(
                "Step failed",
                step_id=step.id,
                step_type=self.step_type,
                error=message,
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            return HandlerResult(
                success=False,
                error=message,
                error_type=type(e).__name__,
                attempts=attempts,
                duration_ms=duration_ms,
            )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for step configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
