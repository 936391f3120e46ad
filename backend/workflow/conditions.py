"""Condition evaluator shared by retry-until, doWhile loops and switch cases.

A condition spec is a dict tagged by ``type``:

    {"type": "ui-element", "selector": "#done", "elementCheck": "visible"}
    {"type": "api-status", "apiContextKey": "apiResponse", "statusCode": 200}
    {"type": "api-json-path", "jsonPath": "data.state", "expectedValue": "ready"}
    {"type": "javascript", "javascriptExpression": "document.readyState === 'complete'"}
    {"type": "variable", "variableName": "count", "comparisonOperator": "greaterThan", "comparisonValue": 3}

A malformed spec raises ConditionEvaluationError. A well-formed spec whose
check cannot be performed yet (response not stored, element missing,
driver error) evaluates to ``passed=False`` with the reason in the message.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.exceptions import ConditionEvaluationError, ConfigurationError, EngineError
from verification.api import DEFAULT_API_CONTEXT_KEY, ApiBodyPathStrategy, ApiStatusStrategy
from verification.base import MATCH_TYPES, as_text, normalize_operator, to_number, compare_values
from verification.browser import BrowserElementStrategy
from workflow.context import RunContext
from workflow.interpolation import VariableInterpolator
from workflow.waits import url_pattern

logger = structlog.get_logger(__name__)

CONDITION_TYPES = ("ui-element", "api-status", "api-json-path", "javascript", "variable", "url")

_TYPE_ALIASES = {
    "status": "api-status",
    "json-path": "api-json-path",
    "expression": "javascript",
}

_UI_ELEMENT_CHECKS = ("visible", "hidden", "exists")


@dataclass
class ConditionResult:
    passed: bool
    message: str
    actual_value: Any = None
    expected_value: Any = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "message": self.message,
            "actualValue": self.actual_value,
            "expectedValue": self.expected_value,
            "details": self.details,
        }


def normalize_condition_type(condition_type: Optional[str]) -> str:
    if not condition_type:
        raise ConditionEvaluationError("Condition type is required")
    normalized = _TYPE_ALIASES.get(condition_type, condition_type)
    if normalized not in CONDITION_TYPES:
        raise ConditionEvaluationError(
            f'Unknown condition type "{condition_type}". Supported: {", ".join(CONDITION_TYPES)}'
        )
    return normalized


def _require(condition: dict[str, Any], name: str, condition_type: str) -> Any:
    value = condition.get(name)
    if value is None or value == "":
        raise ConditionEvaluationError(f"{name} is required for {condition_type} condition")
    return value


class ConditionEvaluator:
    """Evaluates condition specs against a run context."""

    @classmethod
    def validate(cls, condition: Any) -> str:
        """Check the spec is well-formed and return its normalized type."""
        if not isinstance(condition, dict):
            raise ConditionEvaluationError("Condition must be an object with a type")
        condition_type = normalize_condition_type(condition.get("type"))

        if condition_type == "ui-element":
            _require(condition, "selector", condition_type)
            check = condition.get("elementCheck") or "visible"
            if check not in _UI_ELEMENT_CHECKS:
                raise ConditionEvaluationError(
                    f'Unknown elementCheck "{check}". Supported: {", ".join(_UI_ELEMENT_CHECKS)}'
                )
        elif condition_type == "api-status":
            _require(condition, "statusCode", condition_type)
        elif condition_type == "api-json-path":
            _require(condition, "jsonPath", condition_type)
            if condition.get("expectedValue") is None:
                raise ConditionEvaluationError(f"expectedValue is required for {condition_type} condition")
            match_type = condition.get("matchType")
            if match_type and match_type not in MATCH_TYPES:
                raise ConditionEvaluationError(
                    f'Unknown matchType "{match_type}". Supported: {", ".join(MATCH_TYPES)}'
                )
        elif condition_type == "javascript":
            _require(condition, "javascriptExpression", condition_type)
        elif condition_type == "url":
            _require(condition, "urlPattern", condition_type)
        elif condition_type == "variable":
            _require(condition, "variableName", condition_type)
            if condition.get("comparisonValue") is None:
                raise ConditionEvaluationError(f"comparisonValue is required for {condition_type} condition")
            try:
                normalize_operator(condition.get("comparisonOperator"))
            except ConfigurationError as e:
                raise ConditionEvaluationError(e.message) from e

        return condition_type

    @classmethod
    async def evaluate(cls, condition: Any, context: RunContext) -> ConditionResult:
        condition_type = cls.validate(condition)
        spec = VariableInterpolator.interpolate_object(condition, context)

        evaluator = {
            "ui-element": cls._evaluate_ui_element,
            "api-status": cls._evaluate_api_status,
            "api-json-path": cls._evaluate_api_json_path,
            "javascript": cls._evaluate_javascript,
            "variable": cls._evaluate_variable,
            "url": cls._evaluate_url,
        }[condition_type]

        try:
            return await evaluator(spec, context)
        except ConfigurationError:
            raise
        except Exception as e:
            message = e.message if isinstance(e, EngineError) else str(e)
            logger.debug("Condition not satisfied", condition_type=condition_type, error=message)
            return ConditionResult(
                passed=False,
                message=f"Condition evaluation failed: {message}",
                details={"error": message, "type": condition_type},
            )

    # ─── evaluators ───

    @staticmethod
    async def _evaluate_ui_element(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        result = await BrowserElementStrategy().execute(
            context,
            {
                "selector": spec["selector"],
                "selectorType": spec.get("selectorType") or "css",
                "elementCheck": spec.get("elementCheck") or "visible",
                "timeout": spec.get("timeout") or 30000,
            },
        )
        return ConditionResult(
            passed=result.passed,
            message=result.message,
            actual_value=result.actual_value,
            expected_value=result.expected_value,
            details=result.details,
        )

    @staticmethod
    async def _evaluate_api_status(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        result = await ApiStatusStrategy().execute(
            context,
            {
                "apiContextKey": spec.get("apiContextKey") or DEFAULT_API_CONTEXT_KEY,
                "statusCode": spec["statusCode"],
            },
        )
        return ConditionResult(
            passed=result.passed,
            message=result.message,
            actual_value=result.actual_value,
            expected_value=result.expected_value,
            details=result.details,
        )

    @staticmethod
    async def _evaluate_api_json_path(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        result = await ApiBodyPathStrategy().execute(
            context,
            {
                "apiContextKey": spec.get("apiContextKey") or DEFAULT_API_CONTEXT_KEY,
                "jsonPath": spec["jsonPath"],
                "expectedValue": spec["expectedValue"],
                "matchType": spec.get("matchType") or "equals",
                "caseSensitive": spec.get("caseSensitive", False),
            },
        )
        return ConditionResult(
            passed=result.passed,
            message=result.message,
            actual_value=result.actual_value,
            expected_value=result.expected_value,
            details=result.details,
        )

    @staticmethod
    async def _evaluate_javascript(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        """Evaluate the expression inside the page's own JS runtime."""
        expression = spec["javascriptExpression"]
        page = context.get_page()
        if page is None:
            return ConditionResult(
                passed=False,
                message="No page available. Ensure an openBrowser step runs first",
                details={"expression": expression},
            )

        value = await page.evaluate(f"() => ({expression})")
        passed = bool(value)
        return ConditionResult(
            passed=passed,
            message=(
                "JavaScript condition passed: Expression evaluated to true"
                if passed
                else f"JavaScript condition failed: Expression evaluated to {as_text(value)}"
            ),
            actual_value=value,
            expected_value=True,
            details={"expression": expression},
        )

    @staticmethod
    async def _evaluate_url(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        """``/regex/`` patterns are searched in the page URL; anything else is a substring match."""
        pattern = spec["urlPattern"]
        page = context.get_page()
        if page is None:
            return ConditionResult(
                passed=False,
                message="No page available. Ensure an openBrowser step runs first",
                details={"urlPattern": pattern},
            )

        current_url = page.url
        passed = url_pattern(pattern).search(current_url) is not None
        return ConditionResult(
            passed=passed,
            message=(
                f'URL condition passed: "{current_url}" matches {pattern}'
                if passed
                else f'URL condition failed: "{current_url}" does not match {pattern}'
            ),
            actual_value=current_url,
            expected_value=pattern,
            details={"urlPattern": pattern},
        )

    @staticmethod
    async def _evaluate_variable(spec: dict[str, Any], context: RunContext) -> ConditionResult:
        name = spec["variableName"]
        expected = spec["comparisonValue"]
        operator = normalize_operator(spec.get("comparisonOperator"))

        if name not in context.variables:
            return ConditionResult(
                passed=False,
                message=f'Variable "{name}" not found in context',
                expected_value=expected,
                details={"variableName": name, "availableVariables": sorted(context.variables)},
            )

        actual = context.get_variable(name)
        actual_number = to_number(actual)
        expected_number = to_number(expected)

        if actual_number is not None and expected_number is not None:
            passed = compare_values(actual_number, expected_number, operator)
        elif operator == "equals":
            passed = as_text(actual) == as_text(expected)
        else:
            passed = False

        verdict = "passed" if passed else "failed"
        return ConditionResult(
            passed=passed,
            message=f'Variable condition {verdict}: "{name}" ({as_text(actual)}) {operator} {as_text(expected)}',
            actual_value=actual,
            expected_value=expected,
            details={"variableName": name, "operator": operator},
        )
