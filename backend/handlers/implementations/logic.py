"""Logic handlers: loop, switch, javascriptCode.

Loop and switch return their decision; the graph walker uses it (``routing``)
and does the actual branching/repetition. The decision is also written to the
run context for steps that read it.
"""

import json
from typing import Any, Dict

import structlog

from app.config import get_settings
from core.exceptions import ConfigurationError, NotFoundError, OperationError
from handlers.base import BaseHandler
from workflow.conditions import ConditionEvaluator
from workflow.context import RunContext
from workflow.graph import SWITCH_DEFAULT_HANDLE, Step
from workflow.interpolation import VariableInterpolator

logger = structlog.get_logger(__name__)

LOOP_MODES = ("forEach", "doWhile")

# Context keys shared with the graph walker
LOOP_MODE_KEY = "_loopMode"
LOOP_ARRAY_KEY = "_loopArray"
LOOP_CONDITION_KEY = "_loopCondition"
LOOP_MAX_ITERATIONS_KEY = "_loopMaxIterations"
LOOP_SHOULD_START_KEY = "_loopShouldStart"
SWITCH_OUTPUT_KEY = "switchOutput"
SWITCH_OUTPUT_LABEL_KEY = "switchOutputLabel"


class LoopHandler(BaseHandler):
    """Seed iteration state for the walker.

    The returned dict carries the whole state (``items`` or ``condition`` and
    ``maxIterations``) so concurrent loops never read each other's keys.

    forEach: ``arrayVariable`` names a data key holding a list.
    doWhile: ``condition`` is a condition spec, checked before the first pass
    and after every pass, capped by ``maxIterations``.
    """

    step_type = "loop"
    display_name = "Loop"
    description = "Repeat the connected body for each item or while a condition holds"
    category = "logic"
    routing = "loop"

    async def execute(self, step: Step, context: RunContext) -> Any:
        config = step.config
        mode = config.get("mode")
        if mode not in LOOP_MODES:
            raise ConfigurationError(
                f'Invalid loop mode "{mode}". Must be either "forEach" or "doWhile"'
            )

        context.set_data(LOOP_MODE_KEY, mode)
        context.set_variable("index", 0)

        if mode == "forEach":
            array_key = config.get("arrayVariable")
            if not array_key:
                raise ConfigurationError("arrayVariable is required for forEach mode")
            array_key = VariableInterpolator.interpolate_string(array_key, context)
            array = context.get_data(array_key)
            if array is None:
                raise NotFoundError(
                    f'Loop array "{array_key}" not found in context data',
                    available=context.data.keys(),
                )
            if not isinstance(array, (list, tuple)):
                raise OperationError(f'Context data "{array_key}" is not an array')
            context.set_variable("item", array[0] if array else None)
            items = list(array)
            context.set_data(LOOP_ARRAY_KEY, items)
            return {"mode": mode, "length": len(items), "items": items}

        condition = config.get("condition")
        if not condition:
            raise ConfigurationError("condition is required for doWhile mode")
        ConditionEvaluator.validate(condition)
        max_iterations = VariableInterpolator.interpolate_number(
            config.get("maxIterations"), context, get_settings().LOOP_MAX_ITERATIONS
        )
        context.set_variable("item", None)
        context.set_data(LOOP_CONDITION_KEY, condition)
        context.set_data(LOOP_MAX_ITERATIONS_KEY, int(max_iterations))

        result = await ConditionEvaluator.evaluate(condition, context)
        context.set_data(LOOP_SHOULD_START_KEY, result.passed)
        logger.debug("Loop condition checked", step_id=step.id, passed=result.passed, message=result.message)
        return {
            "mode": mode,
            "shouldStart": result.passed,
            "condition": condition,
            "maxIterations": int(max_iterations),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["mode"],
            "properties": {
                "mode": {"type": "string", "enum": list(LOOP_MODES)},
                "arrayVariable": {"type": "string"},
                "condition": {"type": "object"},
                "maxIterations": {"type": "integer", "default": 1000},
            },
        }


class SwitchHandler(BaseHandler):
    """Pick the first case whose condition passes, else the default handle.

    Config::

        {"cases": [{"id": "case-1", "label": "Ready", "condition": {...}}],
         "defaultCase": {"label": "Otherwise"}}
    """

    step_type = "switch"
    display_name = "Switch"
    description = "Route to the first matching case"
    category = "logic"
    routing = "switch"

    async def execute(self, step: Step, context: RunContext) -> Any:
        cases = step.config.get("cases")
        if not isinstance(cases, list) or not cases:
            raise ConfigurationError("Switch step must have at least one case configured")
        default_label = (step.config.get("defaultCase") or {}).get("label") or "Default"

        for index, case in enumerate(cases):
            if not isinstance(case, dict) or not case.get("id"):
                raise ConfigurationError(f"Switch case #{index + 1} must have an id")
            condition = case.get("condition")
            if not condition:
                continue
            result = await ConditionEvaluator.evaluate(condition, context)
            if result.passed:
                label = case.get("label") or case["id"]
                context.set_data(SWITCH_OUTPUT_KEY, case["id"])
                context.set_data(SWITCH_OUTPUT_LABEL_KEY, label)
                logger.info("Switch case matched", step_id=step.id, case=label, message=result.message)
                return case["id"]

        context.set_data(SWITCH_OUTPUT_KEY, SWITCH_DEFAULT_HANDLE)
        context.set_data(SWITCH_OUTPUT_LABEL_KEY, default_label)
        logger.info("Switch using default case", step_id=step.id, case=default_label)
        return SWITCH_DEFAULT_HANDLE


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class JavaScriptCodeHandler(BaseHandler):
    """Run user code inside the page's own JS runtime.

    The code is the body of ``async (context) => { ... }`` where ``context``
    is ``{data, variables}`` (copies). Whatever it returns is stored under
    ``resultKey`` (default ``result``).
    """

    step_type = "javascriptCode"
    display_name = "JavaScript Code"
    description = "Evaluate JavaScript in the browser page"
    category = "logic"

    async def execute(self, step: Step, context: RunContext) -> Any:
        code = step.config.get("code")
        if not code:
            raise ConfigurationError("code is required for javascriptCode step")
        page = context.get_page()
        if page is None:
            raise NotFoundError("No page available for JavaScript execution. Ensure an openBrowser step runs first")

        payload = {"data": _json_safe(context.get_all_data()), "variables": _json_safe(context.get_all_variables())}
        try:
            result = await page.evaluate(f"async (context) => {{ {code} }}", payload)
        except Exception as e:
            raise OperationError(f"JavaScript execution error: {e}") from e

        if result is not None:
            context.set_data(step.config.get("resultKey") or "result", result)
        return result


LOGIC_HANDLER_TYPES = {
    "loop": LoopHandler,
    "switch": SwitchHandler,
    "javascriptCode": JavaScriptCodeHandler,
}
