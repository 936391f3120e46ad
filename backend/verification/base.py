"""Verification strategy interface and shared value helpers.

A strategy checks one kind of assertion (current URL, response status,
row count...) against the run context and returns a VerificationResult.
Strategies raise NotFoundError for missing context keys and
ConfigurationError for missing config; a failed assertion is a result
with ``passed=False``, not an exception.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.exceptions import ConfigurationError, NotFoundError
from workflow.context import RunContext
from workflow.interpolation import VariableInterpolator, get_nested_value

logger = structlog.get_logger(__name__)

MATCH_TYPES = ("equals", "contains", "startsWith", "endsWith", "regex")
COMPARISON_OPERATORS = ("equals", "greaterThan", "lessThan", "greaterOrEqual", "lessOrEqual")

_OPERATOR_ALIASES = {
    "greaterThanOrEqual": "greaterOrEqual",
    "lessThanOrEqual": "lessOrEqual",
    "eq": "equals",
    "gt": "greaterThan",
    "lt": "lessThan",
    "gte": "greaterOrEqual",
    "lte": "lessOrEqual",
}

OPERATOR_SYMBOLS = {
    "equals": "=",
    "greaterThan": ">",
    "lessThan": "<",
    "greaterOrEqual": ">=",
    "lessOrEqual": "<=",
}

_SIMPLE_REFERENCE = re.compile(
    r"^(?:\$\{(data|variables)\.([^}]+)\}|\{\{(data|variables)\.([^}]+)\}\})$"
)


@dataclass
class VerificationResult:
    """Outcome of one verification."""

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


# ─── Shared helpers ───────────────────────────────────────────

def normalize_operator(operator: Optional[str]) -> str:
    operator = operator or "equals"
    operator = _OPERATOR_ALIASES.get(operator, operator)
    if operator not in COMPARISON_OPERATORS:
        raise ConfigurationError(
            f'Unknown comparison operator "{operator}". Supported: {", ".join(COMPARISON_OPERATORS)}'
        )
    return operator


def resolve_value(value: Any, context: RunContext) -> Any:
    """Resolve context references in a config value.

    Nested-path interpolation is tried first and the result is JSON-decoded
    when possible, so ``"${data.count}"`` yields ``3`` rather than ``"3"``.
    A bare ``${data.key}`` / ``{{data.key}}`` reference that cannot be
    interpolated must name an existing key; otherwise NotFoundError.
    Anything else is returned as-is.
    """
    if not isinstance(value, str):
        return value

    if "${data." in value or "${variables." in value:
        interpolated = VariableInterpolator.interpolate_string(value, context)
        if interpolated != value:
            try:
                return json.loads(interpolated)
            except (TypeError, ValueError):
                return interpolated

    match = _SIMPLE_REFERENCE.match(value.strip())
    if match:
        source = match.group(1) or match.group(3)
        key = match.group(2) or match.group(4)
        if source == "data":
            resolved = get_nested_value(context.data, key)
            if resolved is None:
                raise NotFoundError(f'Context data key "{key}" not found', available=context.data.keys())
        else:
            resolved = get_nested_value(context.variables, key)
            if resolved is None:
                raise NotFoundError(
                    f'Context variable "{key}" not found', available=context.variables.keys()
                )
        return resolved

    return value


def match_value(actual: Any, expected: Any, match_type: Optional[str], case_sensitive: bool = False) -> bool:
    """String match of ``actual`` against ``expected``."""
    actual_str = as_text(actual)
    expected_str = as_text(expected)
    if match_type == "regex":
        try:
            pattern = re.compile(expected_str, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise ConfigurationError(f"Invalid regex pattern: {expected_str}. Error: {e}") from e
        return pattern.search(actual_str) is not None

    if not case_sensitive:
        actual_str = actual_str.lower()
        expected_str = expected_str.lower()

    if match_type == "contains":
        return expected_str in actual_str
    if match_type == "startsWith":
        return actual_str.startswith(expected_str)
    if match_type == "endsWith":
        return actual_str.endswith(expected_str)
    return actual_str == expected_str


def compare_values(actual: float, expected: float, operator: Optional[str]) -> bool:
    operator = normalize_operator(operator)
    if operator == "greaterThan":
        return actual > expected
    if operator == "lessThan":
        return actual < expected
    if operator == "greaterOrEqual":
        return actual >= expected
    if operator == "lessOrEqual":
        return actual <= expected
    return actual == expected


def to_number(value: Any) -> Optional[float]:
    """Parse ``value`` as a number, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def require_context_data(context: RunContext, key: str, what: str) -> Any:
    """Return ``context.data[key]`` or raise NotFoundError listing available keys."""
    value = context.get_data(key)
    if value is None:
        raise NotFoundError(f'{what} not found in context with key "{key}"', available=context.data.keys())
    return value


def require_page(context: RunContext) -> Any:
    page = context.get_page()
    if page is None:
        raise NotFoundError("No page available. Ensure an openBrowser step runs first")
    return page


# ─── Strategy interface ───────────────────────────────────────

class VerificationStrategy(ABC):
    """Base class for all verification strategies."""

    required: tuple[str, ...] = ()

    @abstractmethod
    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        """Run the assertion and return its result."""

    def validate_config(self, config: dict[str, Any]) -> tuple[bool, Optional[str]]:
        """Check required fields are present. Subclasses add type-specific checks."""
        for name in self.required:
            value = config.get(name)
            if value is None or value == "":
                return False, f"{name} is required"
        return True, None

    def required_fields(self) -> list[str]:
        return list(self.required)
