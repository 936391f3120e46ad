"""Database result verification strategies.

Query results are stored by dbQuery steps at ``data[dbContextKey]``
(default ``dbResult``) as ``{rows, rowCount, columns, duration, timestamp}``.
"""

from typing import Any

from core.exceptions import ConfigurationError
from verification.base import (
    OPERATOR_SYMBOLS,
    VerificationResult,
    VerificationStrategy,
    as_text,
    compare_values,
    match_value,
    normalize_operator,
    require_context_data,
    resolve_value,
    to_number,
)
from workflow.context import RunContext
from workflow.interpolation import get_nested_value

DEFAULT_DB_CONTEXT_KEY = "dbResult"


def _result(context: RunContext, config: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    key = config.get("dbContextKey") or DEFAULT_DB_CONTEXT_KEY
    return key, require_context_data(context, key, "Query result")


def _row_count(result: Any) -> int:
    if not isinstance(result, dict):
        return 0
    if result.get("rowCount"):
        return int(result["rowCount"])
    rows = result.get("rows")
    return len(rows) if isinstance(rows, list) else 0


class DbRowCountStrategy(VerificationStrategy):
    required = ("expectedValue",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, result = _result(context, config)
        expected = resolve_value(config.get("expectedValue"), context)
        expected_count = to_number(expected)
        if expected_count is None:
            raise ConfigurationError(f'Expected row count "{expected}" is not a number')
        operator = normalize_operator(config.get("comparisonOperator"))
        symbol = OPERATOR_SYMBOLS[operator]

        actual = _row_count(result)
        passed = compare_values(actual, expected_count, operator)
        return VerificationResult(
            passed=passed,
            message=(
                f"Row count verification passed: {actual} rows {symbol} {expected}"
                if passed
                else f"Row count verification failed: expected row count {symbol} {expected}, but got {actual}"
            ),
            actual_value=actual,
            expected_value=expected,
            details={"dbContextKey": key, "comparisonOperator": operator},
        )


class DbColumnValueStrategy(VerificationStrategy):
    required = ("columnName", "expectedValue")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, result = _result(context, config)
        column = resolve_value(config.get("columnName"), context)
        if not column:
            raise ConfigurationError("Column name is required for column value verification")
        expected = resolve_value(config.get("expectedValue"), context)
        if expected is None:
            raise ConfigurationError("Expected value is required")
        row_index = int(to_number(resolve_value(config.get("rowIndex"), context)) or 0)
        match_type = config.get("matchType") or "equals"
        case_sensitive = bool(config.get("caseSensitive", False))
        details = {"dbContextKey": key, "columnName": column, "rowIndex": row_index}

        rows = result.get("rows") or []
        if not rows:
            return VerificationResult(
                passed=False,
                message="Column value verification failed: Query returned no rows",
                expected_value=expected,
                details=details,
            )
        if row_index >= len(rows):
            return VerificationResult(
                passed=False,
                message=(
                    f"Column value verification failed: Row index {row_index} is out of bounds "
                    f"(query returned {len(rows)} rows)"
                ),
                expected_value=expected,
                details=details,
            )

        row = rows[row_index]
        if column not in row:
            return VerificationResult(
                passed=False,
                message=f'Column value verification failed: Column "{column}" not found in row {row_index}',
                expected_value=expected,
                details={**details, "availableColumns": list(row)},
            )

        actual = row[column]
        passed = match_value(actual, expected, match_type, case_sensitive)
        return VerificationResult(
            passed=passed,
            message=(
                f'Column value verification passed: Column "{column}" in row {row_index} has value "{as_text(actual)}"'
                if passed
                else f'Column value verification failed: Column "{column}" in row {row_index} has value '
                f'"{as_text(actual)}" but expected "{as_text(expected)}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
            details=details,
        )


class DbRowExistsStrategy(VerificationStrategy):
    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, result = _result(context, config)
        count = _row_count(result)
        passed = count > 0
        return VerificationResult(
            passed=passed,
            message=(
                f"Row exists verification passed: Query returned {count} row(s)"
                if passed
                else "Row exists verification failed: Query returned no rows"
            ),
            actual_value=count,
            expected_value="> 0",
            details={"dbContextKey": key},
        )


class DbQueryResultStrategy(VerificationStrategy):
    """Compares the rows (or a path inside them) as text."""

    required = ("expectedValue",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, result = _result(context, config)
        expected = resolve_value(config.get("expectedValue"), context)
        if expected is None:
            raise ConfigurationError("Expected value is required")
        match_type = config.get("matchType") or "equals"
        case_sensitive = bool(config.get("caseSensitive", False))
        json_path = config.get("jsonPath")

        actual = result.get("rows", result)
        if json_path:
            actual = get_nested_value(actual, json_path)
            if actual is None:
                return VerificationResult(
                    passed=False,
                    message=f'Query result verification failed: JSON path "{json_path}" not found in result',
                    expected_value=expected,
                    details={"dbContextKey": key, "jsonPath": json_path},
                )

        passed = match_value(as_text(actual), as_text(expected), match_type, case_sensitive)
        return VerificationResult(
            passed=passed,
            message=(
                "Query result verification passed: Result matches expected value"
                if passed
                else f"Query result verification failed: Result does not match expected value (match type: {match_type})"
            ),
            actual_value=actual,
            expected_value=expected,
            details={"dbContextKey": key, "jsonPath": json_path, "matchType": match_type},
        )
