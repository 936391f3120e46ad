"""API response verification strategies.

All of them read a response object stored by an apiRequest/apiCurl step
at ``data[apiContextKey]`` (default ``apiResponse``) with the shape
``{status, statusText, headers, body, duration, timestamp}``.
"""

from typing import Any

from core.exceptions import ConfigurationError
from verification.base import (
    VerificationResult,
    VerificationStrategy,
    as_text,
    match_value,
    require_context_data,
    resolve_value,
    to_number,
)
from workflow.context import RunContext
from workflow.interpolation import get_nested_value

DEFAULT_API_CONTEXT_KEY = "apiResponse"


def _response(context: RunContext, config: dict[str, Any]) -> tuple[str, Any]:
    key = config.get("apiContextKey") or DEFAULT_API_CONTEXT_KEY
    return key, require_context_data(context, key, "API response")


class ApiStatusStrategy(VerificationStrategy):
    required = ("statusCode",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, response = _response(context, config)
        expected = resolve_value(config.get("statusCode"), context)
        if expected is None or expected == "":
            raise ConfigurationError("Status code is required for API status verification")

        actual = response.get("status") if isinstance(response, dict) else None
        actual_number = to_number(actual)
        expected_number = to_number(expected)
        if expected_number is None:
            raise ConfigurationError(f'Status code "{expected}" is not a number')
        passed = actual_number is not None and actual_number == expected_number
        expected_display = int(expected_number)

        return VerificationResult(
            passed=passed,
            message=(
                f"API status verification passed: Status code {actual} matches expected {expected_display}"
                if passed
                else f"API status verification failed: Expected status code {expected_display}, but got {actual}"
            ),
            actual_value=actual,
            expected_value=expected_display,
            details={"apiContextKey": key, "statusText": response.get("statusText")},
        )

    def validate_config(self, config: dict[str, Any]) -> tuple[bool, str | None]:
        valid, error = super().validate_config(config)
        if not valid:
            return valid, error
        context_key = config.get("apiContextKey")
        if context_key is not None and not isinstance(context_key, str):
            return False, "apiContextKey must be a string"
        return True, None


class ApiHeaderStrategy(VerificationStrategy):
    required = ("headerName", "expectedValue")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, response = _response(context, config)
        header_name = config.get("headerName")
        if not header_name:
            raise ConfigurationError("Header name is required for API header verification")
        expected = resolve_value(config.get("expectedValue"), context)
        if expected is None:
            raise ConfigurationError("Expected header value is required")
        match_type = config.get("matchType") or "equals"
        case_sensitive = bool(config.get("caseSensitive", False))

        headers = response.get("headers") or {}
        actual = None
        for name, value in headers.items():
            if name.lower() == str(header_name).lower():
                actual = value
                break

        if actual is None:
            return VerificationResult(
                passed=False,
                message=f'API header verification failed: Header "{header_name}" not found in response',
                expected_value=expected,
                details={"apiContextKey": key, "availableHeaders": list(headers)},
            )

        passed = match_value(actual, expected, match_type, case_sensitive)
        return VerificationResult(
            passed=passed,
            message=(
                f'API header verification passed: Header "{header_name}" has value "{actual}" matching expected "{expected}"'
                if passed
                else f'API header verification failed: Header "{header_name}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
            details={"apiContextKey": key, "headerName": header_name},
        )


class ApiBodyPathStrategy(VerificationStrategy):
    """Checks one value inside the response body, addressed by a dotted/indexed path."""

    required = ("jsonPath", "expectedValue")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, response = _response(context, config)
        json_path = config.get("jsonPath")
        if not json_path:
            raise ConfigurationError("JSON path is required for API body path verification")
        expected = resolve_value(config.get("expectedValue"), context)
        if expected is None:
            raise ConfigurationError("Expected value is required")
        match_type = config.get("matchType") or "equals"
        case_sensitive = bool(config.get("caseSensitive", False))

        actual = get_nested_value(response.get("body"), json_path)
        if actual is None:
            return VerificationResult(
                passed=False,
                message=f'API body path verification failed: Path "{json_path}" not found in response body',
                expected_value=expected,
                details={"apiContextKey": key, "jsonPath": json_path},
            )

        passed = match_value(actual, expected, match_type, case_sensitive)
        return VerificationResult(
            passed=passed,
            message=(
                f'API body path verification passed: Path "{json_path}" has value {as_text(actual)!r} '
                f"matching expected {as_text(expected)!r}"
                if passed
                else f'API body path verification failed: Path "{json_path}" has value {as_text(actual)!r} '
                f"but expected {as_text(expected)!r} (match type: {match_type})"
            ),
            actual_value=actual,
            expected_value=expected,
            details={"apiContextKey": key, "jsonPath": json_path},
        )


class ApiBodyValueStrategy(VerificationStrategy):
    """Compares the whole response body as text."""

    required = ("expectedValue",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        key, response = _response(context, config)
        expected = resolve_value(config.get("expectedValue"), context)
        if expected is None:
            raise ConfigurationError("Expected value is required")
        match_type = config.get("matchType") or "equals"
        case_sensitive = bool(config.get("caseSensitive", False))

        actual = response.get("body")
        passed = match_value(as_text(actual), as_text(expected), match_type, case_sensitive)
        return VerificationResult(
            passed=passed,
            message=(
                "API body value verification passed: Response body matches expected value"
                if passed
                else f"API body value verification failed: Response body does not match expected value "
                f"(match type: {match_type})"
            ),
            actual_value=actual,
            expected_value=expected,
            details={"apiContextKey": key},
        )
