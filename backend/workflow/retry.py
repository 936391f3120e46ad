"""Step retry orchestration.

Provides the retry policy every step can carry:
- count: retry a failed action up to N more times
- untilCondition: keep retrying until the action succeeds or a condition passes
- fixed or exponential (capped) delay between attempts
- failSilently: swallow the final failure and return SILENT_FAILURE

Usage:
    policy = RetryPolicy.from_config(step.config, context)
    result = await execute_with_retry(lambda: handler.execute(step, context), policy, context)
    if result is SILENT_FAILURE:
        ...
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import get_settings
from core.exceptions import ConfigurationError, EngineError, OperationError
from workflow.conditions import ConditionEvaluator
from workflow.context import RunContext
from workflow.interpolation import VariableInterpolator

logger = structlog.get_logger(__name__)

DEFAULT_CONDITION_TIMEOUT_MS = 30000


class _SilentFailure:
    """Returned instead of a result when a failure was suppressed."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SILENT_FAILURE"

    def __bool__(self) -> bool:
        return False


SILENT_FAILURE = _SilentFailure()


class RetryStrategy(str, Enum):
    COUNT = "count"
    UNTIL_CONDITION = "untilCondition"


class DelayStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Keys of the older retry-condition format, mapped onto condition spec keys
_UNTIL_CONDITION_ALIASES = {
    "expectedStatus": "statusCode",
    "contextKey": "apiContextKey",
}


def _normalize_until_condition(condition: dict[str, Any]) -> dict[str, Any]:
    spec = dict(condition)
    if spec.get("type") == "selector":
        spec["type"] = "ui-element"
        spec.setdefault("selector", spec.get("value"))
        if spec.get("visibility") == "invisible":
            spec.setdefault("elementCheck", "hidden")
    if spec.get("type") == "javascript" and "value" in spec:
        spec.setdefault("javascriptExpression", spec.get("value"))
    if spec.get("type") == "url" and "value" in spec:
        spec.setdefault("urlPattern", spec.get("value"))
    for old, new in _UNTIL_CONDITION_ALIASES.items():
        if old in spec and new not in spec:
            spec[new] = spec[old]
    return spec


@dataclass
class RetryPolicy:
    """Retry configuration for one step invocation.

    Numbers are interpolated when the policy is built; delay fields are read
    again before each retry (``next_delay``).
    """

    enabled: bool = False
    strategy: RetryStrategy = RetryStrategy.COUNT
    count: int = 3
    until_condition: Optional[dict[str, Any]] = None
    delay: float = 1000
    delay_strategy: DelayStrategy = DelayStrategy.FIXED
    max_delay: Optional[float] = None
    fail_silently: bool = False
    condition_timeout: float = DEFAULT_CONDITION_TIMEOUT_MS
    # Raw step config, re-read before each retry
    source: Optional[dict[str, Any]] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_config(cls, config: dict[str, Any], context: Optional[RunContext] = None) -> "RetryPolicy":
        """Build from step config: a nested ``retry`` object or flat ``retry*`` keys."""
        settings = get_settings()
        context = context or RunContext()
        nested = config.get("retry") if isinstance(config.get("retry"), dict) else {}

        def _pick(nested_key: str, flat_key: str) -> Any:
            if nested_key in nested:
                return nested[nested_key]
            return config.get(flat_key)

        enabled = VariableInterpolator.interpolate_bool(_pick("enabled", "retryEnabled"), context)
        strategy_raw = _pick("strategy", "retryStrategy") or RetryStrategy.COUNT.value
        try:
            strategy = RetryStrategy(strategy_raw)
        except ValueError:
            raise ConfigurationError(
                f'Invalid retry strategy "{strategy_raw}". Supported: count, untilCondition'
            )
        delay_strategy_raw = _pick("delayStrategy", "retryDelayStrategy") or DelayStrategy.FIXED.value
        try:
            delay_strategy = DelayStrategy(delay_strategy_raw)
        except ValueError:
            raise ConfigurationError(
                f'Invalid retry delay strategy "{delay_strategy_raw}". Supported: fixed, exponential'
            )

        count = VariableInterpolator.interpolate_number(
            _pick("count", "retryCount"), context, settings.DEFAULT_RETRY_COUNT
        )
        delay = VariableInterpolator.interpolate_number(
            _pick("delay", "retryDelay"), context, settings.DEFAULT_RETRY_DELAY_MS
        )
        max_delay = VariableInterpolator.interpolate_number(_pick("maxDelay", "retryMaxDelay"), context)

        until_condition = _pick("untilCondition", "retryUntilCondition")
        condition_timeout = DEFAULT_CONDITION_TIMEOUT_MS
        if isinstance(until_condition, dict):
            until_condition = _normalize_until_condition(until_condition)
            condition_timeout = VariableInterpolator.interpolate_number(
                until_condition.get("timeout"), context, DEFAULT_CONDITION_TIMEOUT_MS
            )
        elif until_condition is not None:
            raise ConfigurationError("retryUntilCondition must be a condition object")

        fail_silently = nested.get("failSilently", config.get("failSilently", False))

        return cls(
            enabled=enabled,
            strategy=strategy,
            count=max(int(count), 0),
            until_condition=until_condition,
            delay=max(float(delay), 0.0),
            delay_strategy=delay_strategy,
            max_delay=float(max_delay) if max_delay is not None else None,
            fail_silently=VariableInterpolator.interpolate_bool(fail_silently, context),
            condition_timeout=float(condition_timeout),
            source=config,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "strategy": self.strategy.value,
            "count": self.count,
            "untilCondition": self.until_condition,
            "delay": self.delay,
            "delayStrategy": self.delay_strategy.value,
            "maxDelay": self.max_delay,
            "failSilently": self.fail_silently,
        }

    def compute_delay(self, attempt: int) -> float:
        """Delay in ms before retry number ``attempt`` (1-based)."""
        if self.delay_strategy == DelayStrategy.EXPONENTIAL:
            delay = self.delay * (2 ** (attempt - 1))
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            return delay
        return self.delay

    def next_delay(self, attempt: int, context: Optional[RunContext] = None) -> float:
        """Delay before retry ``attempt`` with delay fields interpolated against the context as it is now."""
        if self.source is None or context is None:
            return self.compute_delay(attempt)
        return RetryPolicy.from_config(self.source, context).compute_delay(attempt)


def _describe(error: BaseException) -> str:
    return error.message if isinstance(error, EngineError) else str(error) or type(error).__name__


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    context: Optional[RunContext] = None,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
) -> Any:
    """Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument async callable; called once per attempt.
        policy: RetryPolicy for this invocation.
        context: Run context, needed for untilCondition evaluation.
        on_retry: Optional callback(attempt, error, delay_ms) before each retry.

    Returns:
        The operation's result, or SILENT_FAILURE when a failure was suppressed.

    Raises:
        ConfigurationError: never retried, never suppressed.
        The last operation error when retries are exhausted and failSilently is off.
    """
    if not policy.enabled:
        try:
            return await operation()
        except ConfigurationError:
            raise
        except Exception as e:
            if policy.fail_silently:
                logger.warning("Operation failed silently", error=_describe(e))
                return SILENT_FAILURE
            raise

    if policy.strategy == RetryStrategy.UNTIL_CONDITION:
        return await _retry_until_condition(operation, policy, context or RunContext(), on_retry)
    return await _retry_with_count(operation, policy, context, on_retry)


async def _notify(on_retry, attempt: int, error: BaseException, delay: float) -> None:
    if on_retry is None:
        return
    outcome = on_retry(attempt, error, delay)
    if asyncio.iscoroutine(outcome):
        await outcome


async def _retry_with_count(operation, policy: RetryPolicy, context: Optional[RunContext], on_retry) -> Any:
    last_error: Optional[BaseException] = None

    for attempt in range(policy.count + 1):
        try:
            return await operation()
        except ConfigurationError:
            raise
        except Exception as e:
            last_error = e
            if attempt >= policy.count:
                break
            delay = policy.next_delay(attempt + 1, context)
            logger.info(
                "Retrying operation",
                attempt=attempt + 1,
                max_retries=policy.count,
                delay_ms=delay,
                error=_describe(e),
            )
            await _notify(on_retry, attempt + 1, e, delay)
            await asyncio.sleep(delay / 1000)

    if policy.fail_silently:
        logger.warning(
            "Operation failed silently after retries",
            retries=policy.count,
            error=_describe(last_error),
        )
        return SILENT_FAILURE
    raise last_error


async def _retry_until_condition(
    operation,
    policy: RetryPolicy,
    context: RunContext,
    on_retry,
) -> Any:
    """Race retrying attempts against a condition poller; first success wins."""
    if not policy.until_condition:
        raise ConfigurationError("untilCondition is required for the untilCondition retry strategy")
    ConditionEvaluator.validate(policy.until_condition)

    settings = get_settings()
    poll_interval = settings.CONDITION_POLL_INTERVAL_MS / 1000
    timeout_ms = policy.condition_timeout or DEFAULT_CONDITION_TIMEOUT_MS
    last_error: list[BaseException] = []
    condition_met = asyncio.Event()

    async def _attempts() -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except ConfigurationError:
                raise
            except Exception as e:
                last_error[:] = [e]
                delay = policy.next_delay(attempt, context)
                logger.info("Retrying until condition", attempt=attempt, delay_ms=delay, error=_describe(e))
                await _notify(on_retry, attempt, e, delay)
                await asyncio.sleep(delay / 1000)

    async def _poll() -> None:
        while True:
            result = await ConditionEvaluator.evaluate(policy.until_condition, context)
            if result.passed:
                condition_met.set()
                return
            await asyncio.sleep(poll_interval)

    started = time.monotonic()
    action_task = asyncio.ensure_future(_attempts())
    poll_task = asyncio.ensure_future(_poll())
    try:
        done, _ = await asyncio.wait(
            {action_task, poll_task},
            timeout=timeout_ms / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (action_task, poll_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(action_task, poll_task, return_exceptions=True)

    elapsed_ms = round((time.monotonic() - started) * 1000, 2)

    # A finished action wins even if the condition also passed in the same tick
    if action_task in done:
        result = action_task.result()
        logger.info("Operation succeeded under untilCondition", duration_ms=elapsed_ms)
        return result

    if poll_task in done:
        poll_task.result()  # re-raises a configuration error from the evaluator
        if condition_met.is_set():
            logger.info("Retry condition satisfied", duration_ms=elapsed_ms)
            return None

    reason = _describe(last_error[0]) if last_error else "Condition not met"
    if policy.fail_silently:
        logger.warning("Retry until condition timed out silently", timeout_ms=timeout_ms, error=reason)
        return SILENT_FAILURE
    raise OperationError(f"Retry until condition timed out after {int(timeout_ms)}ms: {reason}", 504)
