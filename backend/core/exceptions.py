"""Custom exceptions for the workflow execution engine.

Taxonomy:
- ConfigurationError: a step or condition is missing/invalid config. Fatal, never retried.
- OperationError: the action itself failed. Retried per policy, then raised or suppressed.
- NotFoundError: a referenced context key, connection, handler or strategy is absent.
"""

from typing import Iterable, Optional


class EngineError(Exception):
    """Base exception for the execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code used when surfaced through the API
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ConfigurationError(EngineError):
    """Missing or invalid step configuration."""

    def __init__(self, message: str = "Invalid configuration"):
        """Initialize ConfigurationError with 422 status code."""
        super().__init__(message, 422)


class ConditionEvaluationError(ConfigurationError):
    """Malformed condition spec (unknown type or missing field)."""


class NotFoundError(EngineError):
    """Referenced resource not found."""

    def __init__(
        self,
        message: str = "Resource not found",
        available: Optional[Iterable[str]] = None,
    ):
        """Initialize NotFoundError with 404 status code.

        When ``available`` is given, the keys are appended to the message so
        users can see what they could have referenced instead.
        """
        self.available = sorted(available) if available is not None else None
        if self.available is not None:
            listing = ", ".join(self.available) if self.available else "none"
            message = f"{message}. Available: {listing}"
        super().__init__(message, 404)


class OperationError(EngineError):
    """A step's action failed at runtime."""

    def __init__(self, message: str = "Operation failed", status_code: int = 500):
        super().__init__(message, status_code)


class WaitTimeoutError(OperationError):
    """A wait condition did not resolve within its timeout."""

    def __init__(self, condition: str, timeout_ms: int):
        self.condition = condition
        self.timeout_ms = timeout_ms
        super().__init__(f"Timed out after {timeout_ms}ms waiting for {condition}", 504)


class VerificationFailedError(OperationError):
    """A verify step's assertion did not pass."""


class CapacityError(EngineError):
    """Too many runs in flight."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum of {limit} concurrent executions reached", 429)
