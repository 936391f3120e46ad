"""Flow handlers: start, log, setVariable, delay."""

import asyncio
from typing import Any, Dict, Optional

import structlog

from core.exceptions import ConfigurationError
from handlers.base import BaseHandler
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator, stringify

logger = structlog.get_logger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")


class StartHandler(BaseHandler):
    """Entry step. Optionally seeds initial variables."""

    step_type = "start"
    display_name = "Start"
    description = "Workflow entry point"

    async def execute(self, step: Step, context: RunContext) -> Any:
        initial = step.config.get("variables") or {}
        if not isinstance(initial, dict):
            raise ConfigurationError("Start step variables must be an object")
        for name, value in initial.items():
            context.set_variable(name, VariableInterpolator.interpolate_object(value, context))
        return None


class LogHandler(BaseHandler):
    step_type = "log"
    display_name = "Log"
    description = "Write an interpolated message to the run log"

    async def execute(self, step: Step, context: RunContext) -> Any:
        message = step.config.get("message")
        if message is None:
            raise ConfigurationError("message is required for log step")
        level = (step.config.get("level") or "info").lower()
        if level == "warn":
            level = "warning"
        if level not in LOG_LEVELS:
            raise ConfigurationError(f'Unknown log level "{level}". Supported: {", ".join(LOG_LEVELS)}')

        text = stringify(VariableInterpolator.interpolate_object(message, context))
        getattr(logger, level)("Workflow log", step_id=step.id, message=text)
        return text

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["message"],
            "properties": {
                "message": {"type": "string"},
                "level": {"type": "string", "enum": list(LOG_LEVELS)},
            },
        }


class SetVariableHandler(BaseHandler):
    """Store a value under ``variables`` (default) or ``data``.

    A value that is a single ``${...}`` reference keeps its original type.
    """

    step_type = "setVariable"
    display_name = "Set Variable"
    description = "Assign a value to a workflow variable"

    async def execute(self, step: Step, context: RunContext) -> Any:
        name = step.config.get("variableName")
        if not name:
            raise ConfigurationError("variableName is required for setVariable step")
        scope = step.config.get("scope") or "variables"
        if scope not in ("variables", "data"):
            raise ConfigurationError(f'Unknown scope "{scope}". Supported: variables, data')

        raw = step.config.get("value")
        value = (
            VariableInterpolator.resolve_reference(raw, context)
            if isinstance(raw, str)
            else VariableInterpolator.interpolate_object(raw, context)
        )
        if scope == "data":
            context.set_data(name, value)
        else:
            context.set_variable(name, value)
        return value

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["variableName"],
            "properties": {
                "variableName": {"type": "string"},
                "value": {},
                "scope": {"type": "string", "enum": ["variables", "data"]},
            },
        }


class DelayHandler(BaseHandler):
    step_type = "delay"
    display_name = "Delay"
    description = "Pause the current path for a number of milliseconds"

    def attempt_timeout_ms(self, step: Step, context: RunContext) -> Optional[float]:
        # The pause itself is the action; the step timeout only applies if set explicitly
        if step.config.get("timeout") is None:
            return None
        return super().attempt_timeout_ms(step, context)

    async def execute(self, step: Step, context: RunContext) -> Any:
        duration = VariableInterpolator.interpolate_number(step.config.get("duration"), context)
        if duration is None or duration < 0:
            raise ConfigurationError("duration (ms, >= 0) is required for delay step")
        await asyncio.sleep(duration / 1000)
        return duration


FLOW_HANDLER_TYPES = {
    "start": StartHandler,
    "log": LogHandler,
    "setVariable": SetVariableHandler,
    "delay": DelayHandler,
}
